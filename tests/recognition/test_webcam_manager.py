"""Tests for the shared webcam manager and the image-capture collaborator."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from django.test import SimpleTestCase, override_settings

import numpy as np

from recognition import monitoring
from recognition.collaborators import CaptureUnavailable
from recognition.webcam_manager import (
    WebcamImageCapture,
    WebcamManager,
    get_webcam_manager,
    reset_webcam_manager,
)


def _stream_returning(frame):
    stream = MagicMock()
    stream.start.return_value = stream
    stream.read.side_effect = lambda: frame
    return stream


@override_settings(RECOGNITION_CAMERA_WARMUP_SECONDS=0.0)
class WebcamManagerLifecycleTests(SimpleTestCase):
    """Ensure the shared webcam manager releases resources cleanly."""

    def setUp(self) -> None:
        monitoring.reset_for_tests()
        reset_webcam_manager()
        return super().setUp()

    def tearDown(self) -> None:
        reset_webcam_manager()
        return super().tearDown()

    @patch("recognition.webcam_manager.VideoStream")
    def test_last_consumer_release_stops_underlying_stream(self, mock_videostream):
        stream = _stream_returning(np.zeros((1, 1, 3), dtype=np.uint8))
        mock_videostream.return_value = stream

        manager = get_webcam_manager()
        with manager.frame_consumer() as consumer:
            self.assertIsNotNone(consumer.read(timeout=0.5))
            self.assertTrue(manager.running)

        self.assertFalse(manager.running)
        manager.shutdown()
        stream.stop.assert_called_once()
        self.assertEqual(monitoring.metric_value("capture_camera_stop", {"status": "success"}), 1.0)

    @patch("recognition.webcam_manager.VideoStream")
    def test_reset_disposes_existing_instance(self, mock_videostream):
        frame = np.zeros((1, 1, 3), dtype=np.uint8)
        stream_one = _stream_returning(frame)
        stream_two = _stream_returning(frame)
        mock_videostream.side_effect = [stream_one, stream_two]

        manager_first = get_webcam_manager()
        consumer = manager_first.frame_consumer()
        consumer.open()
        self.assertIsNotNone(consumer.read(timeout=0.5))

        reset_webcam_manager()
        stream_one.stop.assert_called_once()

        manager_second = get_webcam_manager()
        self.assertIsNot(manager_first, manager_second)
        with manager_second.frame_consumer() as consumer:
            self.assertIsNotNone(consumer.read(timeout=0.5))

    @patch("recognition.webcam_manager.VideoStream")
    def test_failed_start_is_recorded_and_raised(self, mock_videostream):
        mock_videostream.side_effect = RuntimeError("no device")

        manager = WebcamManager(src=0, warmup_time=0)
        with self.assertRaises(RuntimeError):
            manager.start()

        self.assertFalse(manager.running)
        self.assertEqual(monitoring.metric_value("capture_camera_start", {"status": "failure"}), 1.0)


class WebcamImageCaptureTests(SimpleTestCase):
    def setUp(self) -> None:
        monitoring.reset_for_tests()
        return super().setUp()

    @patch("recognition.webcam_manager.VideoStream")
    def test_capture_returns_frame_and_stop_releases_camera(self, mock_videostream):
        frame = np.full((2, 2, 3), 7, dtype=np.uint8)
        stream = _stream_returning(frame)
        mock_videostream.return_value = stream
        capture = WebcamImageCapture(manager=WebcamManager(warmup_time=0), timeout=0.5)

        handle = capture.start()
        image = capture.capture(handle)
        capture.stop(handle)

        np.testing.assert_array_equal(image, frame)
        stream.stop.assert_called_once()
        self.assertFalse(handle.active)

    @patch("recognition.webcam_manager.VideoStream")
    def test_start_maps_device_errors_to_capture_unavailable(self, mock_videostream):
        mock_videostream.side_effect = OSError("permission denied")
        capture = WebcamImageCapture(manager=WebcamManager(warmup_time=0), timeout=0.1)

        with self.assertRaises(CaptureUnavailable):
            capture.start()

    def test_capture_without_frame_is_unavailable(self):
        handle = MagicMock()
        handle.read.return_value = None
        capture = WebcamImageCapture(manager=MagicMock(), timeout=0.01)

        with self.assertRaises(CaptureUnavailable):
            capture.capture(handle)
