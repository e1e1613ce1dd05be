"""DeepFace-backed feature extractor with background model loading."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Mapping, Optional

from django.conf import settings

from . import monitoring
from .collaborators import ExtractionError, ModelNotReady
from .pipeline import FeatureVector, extract_all_embeddings

logger = logging.getLogger(__name__)


def get_deepface_options() -> Dict[str, Any]:
    """Return the configured DeepFace model, detector and detection policy."""

    options: Mapping[str, Any] = getattr(settings, "RECOGNITION_DEEPFACE_OPTIONS", {}) or {}
    return {
        "model": str(options.get("model", "Facenet")),
        "detector_backend": str(options.get("detector_backend", "opencv")),
        "enforce_detection": bool(options.get("enforce_detection", True)),
    }


def _face_area(facial_area: Optional[Mapping[str, int]]) -> int:
    if not facial_area:
        return 0
    return int(facial_area.get("w", 0)) * int(facial_area.get("h", 0))


class DeepFaceExtractor:
    """Compute face descriptors with DeepFace.

    The model is built once, on a background thread, the first time it is
    needed (or when :meth:`warm_up` is called at start-up). Until then
    :meth:`detect_faces` raises :class:`ModelNotReady` so callers can show a
    loading state instead of failing.
    """

    def __init__(self, options: Optional[Mapping[str, Any]] = None) -> None:
        self._options = dict(options or get_deepface_options())
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._loader: Optional[threading.Thread] = None
        self._load_error: Optional[BaseException] = None

    # -- model lifecycle -----------------------------------------------

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def warm_up(self) -> None:
        """Start loading the model in the background if not already loading.

        A failure from an earlier attempt stays recorded until
        :meth:`take_load_error` reports it.
        """

        with self._lock:
            if self._ready.is_set() or (self._loader is not None and self._loader.is_alive()):
                return
            self._loader = threading.Thread(target=self._load_model, daemon=True)
            self._loader.start()

    def _load_model(self) -> None:
        start = time.perf_counter()
        try:
            from deepface import DeepFace

            DeepFace.build_model(self._options["model"])
        except Exception as exc:
            self._load_error = exc
            logger.exception(
                "Face model load failed",
                extra={"event": "model_load", "status": "failure"},
            )
            return
        latency = time.perf_counter() - start
        monitoring.record_model_load(latency)
        logger.info(
            "Loaded face model %s in %.2fs",
            self._options["model"],
            latency,
            extra={"event": "model_load", "status": "success"},
        )
        self._load_error = None
        self._ready.set()

    def take_load_error(self) -> Optional[BaseException]:
        """Return the last model load failure once, clearing it."""

        with self._lock:
            error, self._load_error = self._load_error, None
        return error

    def _ensure_ready(self) -> None:
        if self._ready.is_set():
            return
        error = self.take_load_error()
        if error is not None:
            raise ExtractionError(f"Face model could not be loaded: {error}") from error
        self.warm_up()
        raise ModelNotReady("Face recognition model is still loading.")

    # -- extraction ----------------------------------------------------

    def _represent(self, image: Any) -> List[Any]:
        from deepface import DeepFace

        try:
            return DeepFace.represent(
                img_path=image,
                model_name=self._options["model"],
                detector_backend=self._options["detector_backend"],
                enforce_detection=self._options["enforce_detection"],
            )
        except ValueError as exc:
            # DeepFace signals "no face in image" with ValueError when detection is enforced.
            logger.debug("No face detected by DeepFace: %s", exc)
            return []
        except Exception as exc:
            raise ExtractionError(f"Face extraction failed: {exc}") from exc

    def detect_faces(self, image: Any) -> List[FeatureVector]:
        self._ensure_ready()
        faces = extract_all_embeddings(self._represent(image))
        return [vector for vector, _area in faces]

    def describe_single_face(self, image: Any) -> FeatureVector | None:
        self._ensure_ready()
        faces = extract_all_embeddings(self._represent(image))
        if not faces:
            return None
        vector, _area = max(faces, key=lambda face: _face_area(face[1]))
        return vector


_extractor_lock = threading.Lock()
_extractor_instance: Optional[DeepFaceExtractor] = None


def get_feature_extractor() -> DeepFaceExtractor:
    """Return the shared :class:`DeepFaceExtractor` instance."""

    global _extractor_instance
    if _extractor_instance is None:
        with _extractor_lock:
            if _extractor_instance is None:
                _extractor_instance = DeepFaceExtractor()
    return _extractor_instance


__all__ = ["DeepFaceExtractor", "get_deepface_options", "get_feature_extractor"]
