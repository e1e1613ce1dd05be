"""Interfaces of the external collaborators driven by a capture session.

The session never talks to a camera, a model or the database directly; it
goes through these protocols so the workflow can be exercised with fakes.
Concrete implementations live in :mod:`recognition.webcam_manager`,
:mod:`recognition.extraction` and :mod:`classroom.store`.
"""

from __future__ import annotations

import datetime
from typing import Any, Hashable, List, Mapping, Optional, Protocol, Sequence

from .enrollment import RosterSnapshot
from .pipeline import FeatureVector


class CaptureError(Exception):
    """Base class for image acquisition problems."""


class CaptureUnavailable(CaptureError):
    """The camera is missing, busy, or permission to use it was denied."""


class ExtractionError(Exception):
    """The feature extraction model failed on an image."""


class ModelNotReady(ExtractionError):
    """The feature extraction model is still loading its weights."""


class ImageCapture(Protocol):
    def start(self) -> Any:
        """Acquire the camera and return an opaque stream handle."""

    def stop(self, stream: Any) -> None:
        """Release a stream handle returned by :meth:`start`."""

    def capture(self, stream: Any) -> Any:
        """Return one image from an active stream."""


class FeatureExtractor(Protocol):
    def is_ready(self) -> bool:
        """Return ``True`` once the model weights are loaded."""

    def warm_up(self) -> None:
        """Begin loading the model without blocking."""

    def take_load_error(self) -> Optional[BaseException]:
        """Return and clear the last model load failure, if any."""

    def detect_faces(self, image: Any) -> List[FeatureVector]:
        """Return one feature vector per face found in ``image``.

        Must be idempotent for a given image. Raises :class:`ModelNotReady`
        while the model is loading and :class:`ExtractionError` on failure.
        """

    def describe_single_face(self, image: Any) -> FeatureVector | None:
        """Return the vector of the most prominent face, or ``None``."""


class RosterSource(Protocol):
    def load_roster(
        self, subject_id: Hashable, *, date: datetime.date, marked_by: Any
    ) -> RosterSnapshot:
        """Return the enrolled students of a subject together with their templates."""


class AttendanceStore(Protocol):
    def create_attendance_record(
        self, subject_id: Hashable, date: datetime.date, marked_by: Any
    ) -> Hashable:
        """Create an attendance record and return its id."""

    def create_attendance_entries(
        self, record_id: Hashable, entries: Sequence[Mapping[str, object]]
    ) -> bool:
        """Create one entry per ``{"student_id", "status"}`` row; ``False`` on failure."""


__all__ = [
    "AttendanceStore",
    "CaptureError",
    "CaptureUnavailable",
    "ExtractionError",
    "FeatureExtractor",
    "ImageCapture",
    "ModelNotReady",
    "RosterSource",
]
