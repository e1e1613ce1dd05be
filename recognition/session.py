"""State machine for one attendance-taking interaction.

A :class:`CaptureSession` walks a single subject on a single date through::

    idle -> subject_selected -> capturing -> captured -> matching
         -> reviewed -> confirmed -> persisted -> (auto reset) idle

``start_over`` returns to ``idle`` from any state. Each state is its own
immutable phase object carrying exactly the data that state needs, so an
illegal combination (for example a confirmed session without a decision)
cannot be represented.

Face extraction and persistence run on an executor. Every transition bumps
the session generation; a result that comes back for an older generation is
dropped instead of being applied to a session that has since moved on. The
auto-reset timer started on ``persisted`` is cancelled by ``start_over``.
"""

from __future__ import annotations

import datetime
import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Hashable, Optional, Tuple, Union

from . import monitoring
from .aggregation import (
    AttendanceDecision,
    PersistenceError,
    decide,
    decision_rows,
    persist_decision,
    summarize,
)
from .collaborators import (
    AttendanceStore,
    CaptureError,
    ExtractionError,
    FeatureExtractor,
    ImageCapture,
    ModelNotReady,
    RosterSource,
)
from .enrollment import RosterSnapshot, eligible_templates
from .pipeline import DEFAULT_DISTANCE_THRESHOLD, EnrolledTemplate, VectorLengthMismatch, match_detected_faces

logger = logging.getLogger(__name__)

DEFAULT_AUTO_RESET_SECONDS = 3.0


class SessionState(str, Enum):
    IDLE = "idle"
    SUBJECT_SELECTED = "subject_selected"
    CAPTURING = "capturing"
    CAPTURED = "captured"
    MATCHING = "matching"
    REVIEWED = "reviewed"
    CONFIRMED = "confirmed"
    PERSISTED = "persisted"


class SessionCondition(str, Enum):
    """Recoverable conditions surfaced to the user without leaving a defined state."""

    NO_ENROLLED_TEMPLATES = "no_enrolled_templates"
    CAPTURE_UNAVAILABLE = "capture_unavailable"
    NO_FACES_DETECTED = "no_faces_detected"
    MODEL_LOADING = "model_loading"
    EXTRACTION_FAILED = "extraction_failed"
    PERSISTENCE_FAILED = "persistence_failed"


class InvalidTransition(RuntimeError):
    """An event was fired in a state that does not accept it."""

    def __init__(self, event: str, state: SessionState) -> None:
        super().__init__(f"Cannot {event} while the capture session is {state.value}.")
        self.event = event
        self.state = state


# --- Phases -----------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Idle:
    state: ClassVar[SessionState] = SessionState.IDLE


@dataclass(frozen=True, eq=False)
class SubjectSelected:
    state: ClassVar[SessionState] = SessionState.SUBJECT_SELECTED
    roster: RosterSnapshot
    templates: FrozenSet[EnrolledTemplate]

    @property
    def capture_allowed(self) -> bool:
        return bool(self.templates)


@dataclass(frozen=True, eq=False)
class Capturing:
    state: ClassVar[SessionState] = SessionState.CAPTURING
    roster: RosterSnapshot
    templates: FrozenSet[EnrolledTemplate]
    stream: Any


@dataclass(frozen=True, eq=False)
class Captured:
    state: ClassVar[SessionState] = SessionState.CAPTURED
    roster: RosterSnapshot
    templates: FrozenSet[EnrolledTemplate]
    image: Any


@dataclass(frozen=True, eq=False)
class Matching:
    state: ClassVar[SessionState] = SessionState.MATCHING
    roster: RosterSnapshot
    templates: FrozenSet[EnrolledTemplate]
    image: Any
    started_at: float = field(default_factory=time.perf_counter)


@dataclass(frozen=True, eq=False)
class Reviewed:
    state: ClassVar[SessionState] = SessionState.REVIEWED
    roster: RosterSnapshot
    templates: FrozenSet[EnrolledTemplate]
    image: Any
    matched: FrozenSet[Hashable]
    decision: AttendanceDecision
    # Set when an earlier confirm created the record but failed on its entries.
    record_id: Optional[Hashable] = None


@dataclass(frozen=True, eq=False)
class Confirmed:
    state: ClassVar[SessionState] = SessionState.CONFIRMED
    roster: RosterSnapshot
    templates: FrozenSet[EnrolledTemplate]
    image: Any
    matched: FrozenSet[Hashable]
    decision: AttendanceDecision
    record_id: Optional[Hashable] = None


@dataclass(frozen=True, eq=False)
class Persisted:
    state: ClassVar[SessionState] = SessionState.PERSISTED
    roster: RosterSnapshot
    decision: AttendanceDecision
    record_id: Hashable


Phase = Union[Idle, SubjectSelected, Capturing, Captured, Matching, Reviewed, Confirmed, Persisted]

TimerFactory = Callable[[float, Callable[[], None]], Any]


def _match_image(
    extractor: FeatureExtractor,
    image: Any,
    templates: FrozenSet[EnrolledTemplate],
    threshold: float,
) -> Tuple[int, FrozenSet[Hashable]]:
    detected = extractor.detect_faces(image)
    return len(detected), match_detected_faces(detected, templates, threshold)


class CaptureSession:
    """Drives one subject's attendance capture from selection to persistence."""

    def __init__(
        self,
        *,
        roster_source: RosterSource,
        image_capture: ImageCapture,
        extractor: FeatureExtractor,
        store: AttendanceStore,
        threshold: float = DEFAULT_DISTANCE_THRESHOLD,
        auto_reset_seconds: float = DEFAULT_AUTO_RESET_SECONDS,
        executor: Optional[Executor] = None,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._roster_source = roster_source
        self._image_capture = image_capture
        self._extractor = extractor
        self._store = store
        self._threshold = threshold
        self._auto_reset_seconds = max(auto_reset_seconds, 0.0)
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="capture-session"
        )
        self._timer_factory = timer_factory
        self._timer: Any = None

        self._lock = threading.RLock()
        self._phase: Phase = Idle()
        self._condition: Optional[SessionCondition] = None
        self._generation = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._phase.state

    @property
    def condition(self) -> Optional[SessionCondition]:
        with self._lock:
            return self._condition

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def threshold(self) -> float:
        return self._threshold

    def describe(self) -> Dict[str, Any]:
        """Return a JSON-friendly view of the session for review screens."""

        with self._lock:
            phase = self._phase
            payload: Dict[str, Any] = {
                "state": phase.state.value,
                "condition": self._condition.value if self._condition else None,
                "generation": self._generation,
                "subject": None,
                "capture_allowed": False,
                "students": [],
                "summary": None,
                "record_id": None,
            }
            roster: Optional[RosterSnapshot] = getattr(phase, "roster", None)
            if roster is None:
                return payload

            decision: Optional[AttendanceDecision] = getattr(phase, "decision", None)
            payload["subject"] = {
                "id": roster.subject_id,
                "name": roster.subject_name,
                "date": roster.date.isoformat(),
            }
            payload["capture_allowed"] = bool(getattr(phase, "templates", frozenset()))
            payload["students"] = decision_rows(roster, decision)
            if decision is not None:
                payload["summary"] = summarize(decision).as_dict()
            if isinstance(phase, Persisted):
                payload["record_id"] = phase.record_id
            return payload

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, event: str, *phase_types: type) -> Any:
        if not isinstance(self._phase, phase_types):
            raise InvalidTransition(event, self._phase.state)
        return self._phase

    def _transition(self, phase: Phase, condition: Optional[SessionCondition] = None) -> int:
        source = self._phase.state
        self._phase = phase
        self._condition = condition
        self._generation += 1
        monitoring.record_transition(source.value, phase.state.value)
        logger.info(
            "Capture session %s -> %s",
            source.value,
            phase.state.value,
            extra={
                "event": "session_transition",
                "source": source.value,
                "target": phase.state.value,
                "condition": condition.value if condition else None,
                "generation": self._generation,
            },
        )
        return self._generation

    def _is_stale(self, generation: int, stage: str) -> bool:
        if generation == self._generation:
            return False
        monitoring.record_discarded_result(stage)
        logger.info(
            "Discarding %s result for superseded session generation %d (current %d)",
            stage,
            generation,
            self._generation,
            extra={"event": "stale_result", "stage": stage},
        )
        return True

    def _release_stream(self, stream: Any) -> None:
        try:
            self._image_capture.stop(stream)
        except Exception:
            logger.warning("Failed to stop image capture stream", exc_info=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _surface_capture_unavailable(
        self, roster: RosterSnapshot, templates: FrozenSet[EnrolledTemplate], exc: Exception
    ) -> None:
        logger.warning("Image capture unavailable: %s", exc)
        if isinstance(self._phase, SubjectSelected):
            self._condition = SessionCondition.CAPTURE_UNAVAILABLE
        else:
            self._transition(
                SubjectSelected(roster=roster, templates=templates),
                SessionCondition.CAPTURE_UNAVAILABLE,
            )

    def _open_stream(
        self, generation: int, roster: RosterSnapshot, templates: FrozenSet[EnrolledTemplate]
    ) -> SessionState:
        # The camera may take seconds to warm up, so it is acquired outside the lock.
        try:
            stream = self._image_capture.start()
        except CaptureError as exc:
            with self._lock:
                if not self._is_stale(generation, "capture_start"):
                    self._surface_capture_unavailable(roster, templates, exc)
                return self._phase.state

        with self._lock:
            if self._is_stale(generation, "capture_start"):
                self._release_stream(stream)
                return self._phase.state
            self._transition(Capturing(roster=roster, templates=templates, stream=stream))
            return self._phase.state

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def select_subject(
        self,
        subject_id: Hashable,
        *,
        marked_by: Any,
        date: Optional[datetime.date] = None,
    ) -> SessionState:
        """Load the roster snapshot for ``subject_id`` and evaluate the enrollment gate."""

        with self._lock:
            self._require("select a subject", Idle)
            roster = self._roster_source.load_roster(
                subject_id, date=date or datetime.date.today(), marked_by=marked_by
            )
            templates = eligible_templates(roster.students)
            condition = None if templates else SessionCondition.NO_ENROLLED_TEMPLATES
            self._transition(SubjectSelected(roster=roster, templates=templates), condition)
            return self._phase.state

    def start_capture(self) -> SessionState:
        """Acquire the camera, unless no roster member has a template."""

        with self._lock:
            phase = self._require("start capture", SubjectSelected)
            if not phase.capture_allowed:
                self._condition = SessionCondition.NO_ENROLLED_TEMPLATES
                logger.info(
                    "Refusing to start capture for subject %s: no enrolled templates",
                    phase.roster.subject_id,
                )
                return phase.state
            generation = self._generation
        return self._open_stream(generation, phase.roster, phase.templates)

    def cancel_capture(self) -> SessionState:
        """Stop the camera and go back to the selected subject."""

        with self._lock:
            phase = self._require("cancel capture", Capturing)
            self._release_stream(phase.stream)
            self._transition(SubjectSelected(roster=phase.roster, templates=phase.templates))
            return self._phase.state

    def capture_image(self) -> SessionState:
        """Grab one image from the active stream and release the camera."""

        with self._lock:
            phase = self._require("capture an image", Capturing)
            generation = self._generation

        try:
            image = self._image_capture.capture(phase.stream)
        except CaptureError as exc:
            with self._lock:
                if not self._is_stale(generation, "capture"):
                    self._release_stream(phase.stream)
                    self._surface_capture_unavailable(phase.roster, phase.templates, exc)
                return self._phase.state

        with self._lock:
            if self._is_stale(generation, "capture"):
                return self._phase.state
            self._release_stream(phase.stream)
            self._transition(Captured(roster=phase.roster, templates=phase.templates, image=image))
            return self._phase.state

    def begin_matching(self) -> Optional[Future]:
        """Extract faces from the captured image and match them on the executor.

        Returns the future of the background job, or ``None`` when the model
        is not ready. The session then stays ``captured`` with the
        ``model_loading`` condition, or ``extraction_failed`` when the last
        load attempt failed. The next call starts a fresh load.
        """

        with self._lock:
            phase = self._require("begin matching", Captured)
            if not self._extractor.is_ready():
                load_error = self._extractor.take_load_error()
                if load_error is not None:
                    logger.warning("Face model failed to load: %s", load_error)
                    self._condition = SessionCondition.EXTRACTION_FAILED
                    return None
                self._extractor.warm_up()
                self._condition = SessionCondition.MODEL_LOADING
                return None

            matching = Matching(roster=phase.roster, templates=phase.templates, image=phase.image)
            generation = self._transition(matching)
            future = self._executor.submit(
                _match_image, self._extractor, phase.image, phase.templates, self._threshold
            )
        future.add_done_callback(partial(self._finish_matching, generation, matching))
        return future

    def _finish_matching(self, generation: int, matching: Matching, future: Future) -> None:
        with self._lock:
            if self._is_stale(generation, "matching"):
                return

            monitoring.observe_matching(time.perf_counter() - matching.started_at)
            captured = Captured(roster=matching.roster, templates=matching.templates, image=matching.image)
            try:
                face_count, matched = future.result()
            except ModelNotReady:
                self._transition(captured, SessionCondition.MODEL_LOADING)
                return
            except VectorLengthMismatch:
                logger.error(
                    "Detected faces and enrolled templates have different vector lengths",
                    exc_info=True,
                )
                self._transition(captured, SessionCondition.EXTRACTION_FAILED)
                return
            except ExtractionError as exc:
                logger.warning("Face extraction failed: %s", exc, exc_info=True)
                self._transition(captured, SessionCondition.EXTRACTION_FAILED)
                return
            except Exception:
                logger.exception("Unexpected error while matching faces")
                self._transition(captured, SessionCondition.EXTRACTION_FAILED)
                return

            if face_count == 0:
                self._transition(captured, SessionCondition.NO_FACES_DETECTED)
                return

            decision = decide(matching.roster.students, matched)
            logger.info(
                "Matched %d of %d students from %d detected faces",
                len(decision.present_ids),
                len(decision),
                face_count,
            )
            self._transition(
                Reviewed(
                    roster=matching.roster,
                    templates=matching.templates,
                    image=matching.image,
                    matched=matched,
                    decision=decision,
                )
            )

    def retake(self) -> SessionState:
        """Discard the photo and its results and reacquire the camera."""

        with self._lock:
            phase = self._require("retake the photo", Reviewed, Captured)
            generation = self._generation
        return self._open_stream(generation, phase.roster, phase.templates)

    def confirm(self) -> Future:
        """Persist the reviewed decision on the executor."""

        with self._lock:
            phase = self._require("confirm attendance", Reviewed)
            confirmed = Confirmed(
                roster=phase.roster,
                templates=phase.templates,
                image=phase.image,
                matched=phase.matched,
                decision=phase.decision,
                record_id=phase.record_id,
            )
            generation = self._transition(confirmed)
            future = self._executor.submit(
                persist_decision,
                self._store,
                phase.roster,
                phase.decision,
                existing_record_id=phase.record_id,
            )
        future.add_done_callback(partial(self._finish_persisting, generation, confirmed))
        return future

    def _finish_persisting(self, generation: int, confirmed: Confirmed, future: Future) -> None:
        with self._lock:
            if self._is_stale(generation, "persistence"):
                return

            try:
                record_id = future.result()
            except Exception as exc:
                monitoring.record_persistence(False)
                record_id = getattr(exc, "record_id", None) or confirmed.record_id
                if isinstance(exc, PersistenceError):
                    logger.warning("Saving attendance failed: %s", exc)
                else:
                    logger.exception("Unexpected error while saving attendance")
                self._transition(
                    Reviewed(
                        roster=confirmed.roster,
                        templates=confirmed.templates,
                        image=confirmed.image,
                        matched=confirmed.matched,
                        decision=confirmed.decision,
                        record_id=record_id,
                    ),
                    SessionCondition.PERSISTENCE_FAILED,
                )
                return

            monitoring.record_persistence(True)
            generation = self._transition(
                Persisted(roster=confirmed.roster, decision=confirmed.decision, record_id=record_id)
            )
            self._cancel_timer()
            timer = self._timer_factory(self._auto_reset_seconds, partial(self._auto_reset, generation))
            timer.daemon = True
            timer.start()
            self._timer = timer

    def _auto_reset(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not isinstance(self._phase, Persisted):
                return
            self._timer = None
            self._transition(Idle())

    def start_over(self) -> SessionState:
        """Discard all session state from any state, releasing the camera if held."""

        with self._lock:
            self._cancel_timer()
            if isinstance(self._phase, Capturing):
                self._release_stream(self._phase.stream)
            self._transition(Idle())
            return self._phase.state

    def close(self) -> None:
        """Start over and release the executor if this session created it."""

        self.start_over()
        if self._owns_executor:
            self._executor.shutdown(wait=False)


__all__ = [
    "CaptureSession",
    "Captured",
    "Capturing",
    "Confirmed",
    "Idle",
    "InvalidTransition",
    "Matching",
    "Persisted",
    "Phase",
    "Reviewed",
    "SessionCondition",
    "SessionState",
    "SubjectSelected",
]
