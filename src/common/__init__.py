"""Shared helpers used across the Django apps."""

from .crypto import InvalidToken, TemplateCipher, decrypt_template, encrypt_template

__all__ = ["InvalidToken", "TemplateCipher", "decrypt_template", "encrypt_template"]
