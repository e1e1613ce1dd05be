"""Fernet encryption for stored face templates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np
from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

BytesLike = Union[bytes, bytearray, memoryview]


def _coerce_key_bytes(key: BytesLike | str) -> bytes:
    if isinstance(key, str):
        return key.encode()
    return bytes(key)


@dataclass
class TemplateCipher:
    """Encrypt and decrypt feature vectors with the configured Fernet key.

    The key is read from ``FACE_DATA_ENCRYPTION_KEY`` on first use unless
    ``key_override`` is given, so settings overrides in tests take effect.
    """

    setting_name: str = "FACE_DATA_ENCRYPTION_KEY"
    key_override: BytesLike | str | None = None

    def _cipher(self) -> Fernet:
        key = self.key_override
        if key is None:
            key = getattr(settings, self.setting_name, None)
        if not key:
            raise ImproperlyConfigured(f"{self.setting_name} is not configured.")
        try:
            return Fernet(_coerce_key_bytes(key))
        except (TypeError, ValueError) as exc:
            raise ImproperlyConfigured(f"{self.setting_name} is invalid.") from exc

    def encrypt(self, payload: BytesLike) -> bytes:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError("encrypt expects a bytes-like object")
        return self._cipher().encrypt(bytes(payload))

    def decrypt(self, token: BytesLike) -> bytes:
        if not isinstance(token, (bytes, bytearray, memoryview)):
            raise TypeError("decrypt expects a bytes-like object")
        return self._cipher().decrypt(bytes(token))

    def encrypt_vector(self, vector: np.ndarray) -> bytes:
        if not isinstance(vector, np.ndarray):
            raise TypeError("encrypt_vector expects a numpy.ndarray")
        return self.encrypt(np.ravel(vector).astype(np.float64).tobytes())

    def decrypt_vector(self, token: BytesLike) -> np.ndarray:
        return np.frombuffer(self.decrypt(token), dtype=np.float64)


_template_cipher = TemplateCipher()


def encrypt_template(vector: np.ndarray) -> bytes:
    """Encrypt a face template for storage."""

    return _template_cipher.encrypt_vector(vector)


def decrypt_template(token: BytesLike) -> np.ndarray:
    """Decrypt a template stored with :func:`encrypt_template`."""

    return _template_cipher.decrypt_vector(token)


__all__ = ["InvalidToken", "TemplateCipher", "decrypt_template", "encrypt_template"]
