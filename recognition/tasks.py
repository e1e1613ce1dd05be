"""Background jobs for enrolling student face templates."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Optional

import cv2
import numpy as np
from celery import shared_task

from .collaborators import ExtractionError, ModelNotReady
from .extraction import get_feature_extractor

logger = logging.getLogger(__name__)

MODEL_LOADING_RETRY_SECONDS = 5


class EnrollmentError(Exception):
    """Raised when an enrollment photo cannot be turned into a template."""


def decode_image_bytes(payload: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes (JPEG, PNG, ...) into a BGR array."""

    frame_array = np.frombuffer(payload, dtype=np.uint8)
    if frame_array.size == 0:
        logger.warning("Encountered empty enrollment image payload.")
        return None

    image = cv2.imdecode(frame_array, cv2.IMREAD_COLOR)
    if image is None:
        logger.warning("Failed to decode enrollment image payload.")
    return image


def enroll_student_template_sync(student_id: int, image_b64: str) -> dict[str, Any]:
    """Replace the student's template with the most prominent face in the photo.

    The stored template is left untouched when the photo cannot be decoded
    or contains no face.
    """

    from classroom.models import Student

    student = Student.objects.get(pk=student_id)

    try:
        raw = base64.b64decode(image_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EnrollmentError("Enrollment photo is not valid base64 data.") from exc

    image = decode_image_bytes(raw)
    if image is None:
        return {"student_id": student_id, "status": "invalid_image"}

    vector = get_feature_extractor().describe_single_face(image)
    if vector is None:
        logger.info("No face found in enrollment photo for student %s", student_id)
        return {"student_id": student_id, "status": "no_face"}

    student.set_template(vector)
    logger.info(
        "Enrolled face template for student %s",
        student_id,
        extra={"event": "template_enrolled", "status": "success"},
    )
    return {"student_id": student_id, "status": "enrolled", "dimensions": int(vector.size)}


@shared_task(bind=True, name="recognition.enroll_student_template", max_retries=12)
def enroll_student_template(self, student_id: int, image_b64: str) -> dict[str, Any]:
    """Celery task wrapper for :func:`enroll_student_template_sync`."""

    try:
        return enroll_student_template_sync(student_id, image_b64)
    except ModelNotReady as exc:
        logger.info("Face model still loading; retrying enrollment for student %s", student_id)
        raise self.retry(exc=exc, countdown=MODEL_LOADING_RETRY_SECONDS)
    except ExtractionError:
        logger.exception("Template enrollment failed for student %s", student_id)
        raise


__all__ = [
    "EnrollmentError",
    "decode_image_bytes",
    "enroll_student_template",
    "enroll_student_template_sync",
]
