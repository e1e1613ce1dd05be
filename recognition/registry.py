"""Process-wide registry holding one capture session per signed-in user.

The registry is installed when the recognition app is ready, a user's
session is discarded when they log out, and every session is torn down at
interpreter exit.
"""

from __future__ import annotations

import atexit
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Dict, Hashable, Optional

from django.conf import settings

from . import monitoring
from .session import CaptureSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[Executor], CaptureSession]


def build_capture_session(executor: Executor) -> CaptureSession:
    """Create a session wired to the webcam, DeepFace and the ORM."""

    from classroom.store import OrmAttendanceStore, OrmRosterSource

    from .extraction import get_feature_extractor
    from .webcam_manager import WebcamImageCapture

    extractor = get_feature_extractor()
    if getattr(settings, "RECOGNITION_WARM_UP_MODEL", False):
        extractor.warm_up()

    return CaptureSession(
        roster_source=OrmRosterSource(),
        image_capture=WebcamImageCapture(),
        extractor=extractor,
        store=OrmAttendanceStore(),
        threshold=float(getattr(settings, "RECOGNITION_DISTANCE_THRESHOLD", 0.6)),
        auto_reset_seconds=float(getattr(settings, "RECOGNITION_AUTO_RESET_SECONDS", 3.0)),
        executor=executor,
    )


class SessionRegistry:
    """Thread-safe map of user id to :class:`CaptureSession`."""

    def __init__(
        self,
        factory: SessionFactory = build_capture_session,
        *,
        executor: Optional[Executor] = None,
    ) -> None:
        self._factory = factory
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=int(getattr(settings, "RECOGNITION_SESSION_WORKERS", 2)),
            thread_name_prefix="capture-session",
        )
        self._sessions: Dict[Hashable, CaptureSession] = {}
        self._lock = threading.Lock()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get(self, user_id: Hashable) -> CaptureSession:
        """Return the user's session, creating an idle one on first use."""

        with self._lock:
            if self._closed:
                raise RuntimeError("Session registry has been shut down.")
            session = self._sessions.get(user_id)
            if session is None:
                session = self._factory(self._executor)
                self._sessions[user_id] = session
                monitoring.set_active_sessions(len(self._sessions))
                logger.debug("Created capture session for user %s", user_id)
            return session

    def peek(self, user_id: Hashable) -> Optional[CaptureSession]:
        with self._lock:
            return self._sessions.get(user_id)

    def discard(self, user_id: Hashable) -> bool:
        """Start the user's session over and forget it."""

        with self._lock:
            session = self._sessions.pop(user_id, None)
            monitoring.set_active_sessions(len(self._sessions))
        if session is None:
            return False
        session.close()
        logger.info("Discarded capture session for user %s", user_id)
        return True

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            sessions = list(self._sessions.values())
            self._sessions.clear()
            monitoring.set_active_sessions(0)
        for session in sessions:
            try:
                session.close()
            except Exception:
                logger.warning("Failed to close capture session during shutdown", exc_info=True)
        if self._owns_executor:
            self._executor.shutdown(wait=False)


_registry_lock = threading.Lock()
_registry: Optional[SessionRegistry] = None


def install_session_registry(registry: Optional[SessionRegistry] = None) -> SessionRegistry:
    """Install ``registry`` (or a new default one) as the process-wide registry."""

    global _registry
    with _registry_lock:
        previous, _registry = _registry, registry or SessionRegistry()
    if previous is not None and previous is not _registry:
        previous.shutdown()
    return _registry


def get_session_registry() -> SessionRegistry:
    if _registry is None:
        return install_session_registry()
    return _registry


def shutdown_session_registry() -> None:
    global _registry
    with _registry_lock:
        registry, _registry = _registry, None
    if registry is not None:
        registry.shutdown()


def discard_session_on_logout(sender, request=None, user=None, **kwargs) -> None:
    """``user_logged_out`` receiver that drops the user's capture session."""

    if user is None or _registry is None:
        return
    _registry.discard(user.pk)


atexit.register(shutdown_session_registry)


__all__ = [
    "SessionRegistry",
    "build_capture_session",
    "discard_session_on_logout",
    "get_session_registry",
    "install_session_registry",
    "shutdown_session_registry",
]
