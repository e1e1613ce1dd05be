import base64
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest

from classroom.models import Student
from recognition import tasks
from recognition.collaborators import ModelNotReady

pytestmark = pytest.mark.django_db


def _png_b64():
    ok, buffer = cv2.imencode(".png", np.full((8, 8, 3), 120, dtype=np.uint8))
    assert ok
    return base64.b64encode(buffer.tobytes()).decode()


@pytest.fixture
def student():
    return Student.objects.create(name="Ada Lovelace", roll_number="CS-001")


@pytest.fixture
def extractor(monkeypatch):
    fake = MagicMock()
    monkeypatch.setattr(tasks, "get_feature_extractor", lambda: fake)
    return fake


def test_decode_image_bytes_rejects_garbage():
    assert tasks.decode_image_bytes(b"") is None
    assert tasks.decode_image_bytes(b"not an image") is None


def test_enroll_replaces_template(student, extractor):
    student.set_template(np.array([9.0, 9.0]))
    extractor.describe_single_face.return_value = np.array([0.1, 0.2, 0.3])

    result = tasks.enroll_student_template.delay(student.pk, _png_b64()).get()

    assert result == {"student_id": student.pk, "status": "enrolled", "dimensions": 3}
    student.refresh_from_db()
    np.testing.assert_allclose(student.get_template(), [0.1, 0.2, 0.3])
    assert student.template_updated_at is not None


def test_enroll_without_face_keeps_existing_template(student, extractor):
    student.set_template(np.array([9.0, 9.0]))
    extractor.describe_single_face.return_value = None

    result = tasks.enroll_student_template_sync(student.pk, _png_b64())

    assert result["status"] == "no_face"
    student.refresh_from_db()
    np.testing.assert_allclose(student.get_template(), [9.0, 9.0])


def test_enroll_with_undecodable_image(student, extractor):
    result = tasks.enroll_student_template_sync(student.pk, base64.b64encode(b"nope").decode())

    assert result["status"] == "invalid_image"
    extractor.describe_single_face.assert_not_called()
    student.refresh_from_db()
    assert not student.has_template


def test_enroll_rejects_invalid_base64(student, extractor):
    with pytest.raises(tasks.EnrollmentError):
        tasks.enroll_student_template_sync(student.pk, "***")


def test_task_retries_while_model_loads(student, extractor, monkeypatch):
    extractor.describe_single_face.side_effect = ModelNotReady("loading")
    retry = MagicMock(side_effect=RuntimeError("retry scheduled"))
    monkeypatch.setattr(tasks.enroll_student_template, "retry", retry)

    with pytest.raises(RuntimeError, match="retry scheduled"):
        tasks.enroll_student_template.run(student.pk, _png_b64())

    assert retry.call_args.kwargs["countdown"] == tasks.MODEL_LOADING_RETRY_SECONDS
