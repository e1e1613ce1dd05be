"""Shared webcam stream and the image-capture collaborator built on it."""

from __future__ import annotations

import atexit
import logging
import threading
import time
from typing import Optional, Tuple

from django.conf import settings

import numpy as np
from imutils.video import VideoStream

from . import monitoring
from .collaborators import CaptureUnavailable

logger = logging.getLogger(__name__)


class _FrameConsumer:
    """Stream handle handed out by :class:`WebcamManager` to read frames."""

    def __init__(self, manager: "WebcamManager") -> None:
        self._manager = manager
        self._last_frame_id = -1
        self._active = False

    def __enter__(self) -> "_FrameConsumer":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def active(self) -> bool:
        return self._active

    def open(self) -> None:
        if not self._active:
            self._manager._register_consumer()
            self._active = True

    def close(self) -> None:
        if self._active:
            self._active = False
            self._manager._release_consumer()

    def read(self, timeout: Optional[float] = 1.0) -> Optional[np.ndarray]:
        """Return the next frame or ``None`` if no frame arrived in time."""

        if not self._active:
            return None

        frame, frame_id = self._manager._wait_for_frame(self._last_frame_id, timeout)
        if frame is not None:
            self._last_frame_id = frame_id
        return frame


class WebcamManager:
    """Owns one camera stream shared by every consumer in the process.

    The stream starts with the first consumer and stops when the last one is
    released, so a capture session holds the camera only while it is in the
    capturing state.
    """

    def __init__(self, src: int = 0, warmup_time: float = 2.0) -> None:
        self._src = src
        self._warmup_time = max(0.0, warmup_time)
        self._stream: Optional[VideoStream] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._lifecycle_lock = threading.Lock()
        self._frame_lock = threading.Condition()
        self._latest_frame: Optional[np.ndarray] = None
        self._latest_frame_id = 0
        self._consumer_lock = threading.Lock()
        self._consumer_count = 0

    @property
    def running(self) -> bool:
        return self._running

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._running:
                return

            start_time = time.perf_counter()
            try:
                self._stream = VideoStream(src=self._src).start()
                if self._warmup_time:
                    time.sleep(self._warmup_time)

                self._running = True
                self._thread = threading.Thread(target=self._capture_loop, daemon=True)
                self._thread.start()
            except Exception:
                monitoring.record_camera_start(False, time.perf_counter() - start_time)
                logger.exception(
                    "Webcam start failed", extra={"event": "webcam_start", "status": "failure"}
                )
                self._stream = None
                raise
            monitoring.record_camera_start(True, time.perf_counter() - start_time)

    def shutdown(self) -> None:
        with self._lifecycle_lock:
            if not self._running:
                return

            self._running = False
            with self._frame_lock:
                self._frame_lock.notify_all()

            if self._thread:
                self._thread.join(timeout=1.0)
                self._thread = None

            stop_error: Optional[Exception] = None
            if self._stream:
                try:
                    self._stream.stop()
                except Exception as exc:
                    stop_error = exc
                    logger.exception(
                        "Webcam stop failed", extra={"event": "webcam_stop", "status": "failure"}
                    )
                finally:
                    self._stream = None

            self._latest_frame = None
            self._latest_frame_id = 0
            monitoring.record_camera_stop(stop_error is None)
            if stop_error is not None:
                raise stop_error

    # -- consumer helpers ---------------------------------------------

    def frame_consumer(self) -> _FrameConsumer:
        self.start()
        return _FrameConsumer(self)

    def _register_consumer(self) -> None:
        with self._consumer_lock:
            self._consumer_count += 1

    def _release_consumer(self) -> None:
        with self._consumer_lock:
            self._consumer_count = max(0, self._consumer_count - 1)
            idle = self._consumer_count == 0
        if idle:
            self.shutdown()

    # -- frame handling ------------------------------------------------

    def _capture_loop(self) -> None:
        while self._running and self._stream is not None:
            frame = self._stream.read()
            if frame is None:
                time.sleep(0.01)
                continue

            with self._frame_lock:
                self._latest_frame = frame.copy()
                self._latest_frame_id += 1
                self._frame_lock.notify_all()

    def _wait_for_frame(
        self, after_frame_id: int, timeout: Optional[float]
    ) -> Tuple[Optional[np.ndarray], int]:
        end_time = None if timeout is None else time.time() + max(timeout, 0.0)

        with self._frame_lock:
            while self._running and self._latest_frame_id <= after_frame_id:
                if end_time is None:
                    self._frame_lock.wait()
                    continue

                remaining = end_time - time.time()
                if remaining <= 0:
                    break
                self._frame_lock.wait(timeout=remaining)

            if self._latest_frame is None or self._latest_frame_id <= after_frame_id:
                return None, after_frame_id

            return self._latest_frame.copy(), self._latest_frame_id


class WebcamImageCapture:
    """Image-capture collaborator that grabs still frames from the shared webcam."""

    def __init__(self, manager: Optional[WebcamManager] = None, timeout: Optional[float] = None) -> None:
        self._manager = manager
        self._timeout = (
            timeout
            if timeout is not None
            else float(getattr(settings, "RECOGNITION_CAPTURE_TIMEOUT_SECONDS", 2.0))
        )

    @property
    def manager(self) -> WebcamManager:
        return self._manager or get_webcam_manager()

    def start(self) -> _FrameConsumer:
        try:
            consumer = self.manager.frame_consumer()
            consumer.open()
        except Exception as exc:
            raise CaptureUnavailable(f"Unable to access camera: {exc}") from exc
        return consumer

    def stop(self, stream: _FrameConsumer) -> None:
        stream.close()

    def capture(self, stream: _FrameConsumer) -> np.ndarray:
        frame = stream.read(timeout=self._timeout)
        if frame is None:
            raise CaptureUnavailable("No frame received from the camera.")
        return frame


_manager_lock = threading.Lock()
_manager_instance: Optional[WebcamManager] = None


def get_webcam_manager() -> WebcamManager:
    """Return the shared :class:`WebcamManager` instance."""

    global _manager_instance
    if _manager_instance is None:
        with _manager_lock:
            if _manager_instance is None:
                _manager_instance = WebcamManager(
                    src=int(getattr(settings, "RECOGNITION_CAMERA_SOURCE", 0)),
                    warmup_time=float(getattr(settings, "RECOGNITION_CAMERA_WARMUP_SECONDS", 2.0)),
                )
    return _manager_instance


def reset_webcam_manager() -> None:
    """Shutdown the shared manager and remove the singleton reference."""

    global _manager_instance
    if _manager_instance is not None:
        _manager_instance.shutdown()
    _manager_instance = None


atexit.register(reset_webcam_manager)
