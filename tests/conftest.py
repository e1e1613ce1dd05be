from concurrent.futures import Executor, Future

import numpy as np
import pytest

from recognition import monitoring
from recognition.collaborators import CaptureUnavailable
from recognition.enrollment import RosterSnapshot, RosterStudent
from recognition.session import CaptureSession


def _run_into(future, fn, args, kwargs):
    try:
        result = fn(*args, **kwargs)
    except BaseException as exc:
        future.set_exception(exc)
    else:
        future.set_result(result)
    return future


class InlineExecutor(Executor):
    """Run submitted work immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        return _run_into(Future(), fn, args, kwargs)


class DeferredExecutor(Executor):
    """Hold submitted work until the test decides to run it."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_next(self):
        future, fn, args, kwargs = self.pending.pop(0)
        return _run_into(future, fn, args, kwargs)

    def run_all(self):
        while self.pending:
            self.run_next()


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function()


class FakeImageCapture:
    def __init__(self, image=None):
        self.image = image if image is not None else np.zeros((4, 4, 3), dtype=np.uint8)
        self.unavailable = False
        self.capture_fails = False
        self.started = []
        self.stopped = []
        self.on_start = None

    def start(self):
        if self.unavailable:
            raise CaptureUnavailable("Camera permission denied")
        stream = f"stream-{len(self.started) + 1}"
        self.started.append(stream)
        if self.on_start is not None:
            self.on_start()
        return stream

    def stop(self, stream):
        self.stopped.append(stream)

    def capture(self, stream):
        if self.capture_fails:
            raise CaptureUnavailable("No frame received from the camera.")
        return self.image


class FakeExtractor:
    def __init__(self, faces=()):
        self.faces = [np.asarray(face, dtype=float) for face in faces]
        self.ready = True
        self.error = None
        self.load_error = None
        self.calls = 0
        self.warm_ups = 0

    def is_ready(self):
        return self.ready

    def take_load_error(self):
        error, self.load_error = self.load_error, None
        return error

    def warm_up(self):
        self.warm_ups += 1

    def detect_faces(self, image):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.faces)

    def describe_single_face(self, image):
        faces = self.detect_faces(image)
        return faces[0] if faces else None


class FakeRosterSource:
    def __init__(self, students=()):
        self.students = tuple(students)
        self.loaded = []

    def load_roster(self, subject_id, *, date, marked_by):
        self.loaded.append(subject_id)
        return RosterSnapshot(
            subject_id=subject_id,
            subject_name=f"Subject {subject_id}",
            date=date,
            marked_by=marked_by,
            students=self.students,
        )


class FakeAttendanceStore:
    def __init__(self):
        self.records = []
        self.entries = {}
        self.entry_failures = 0
        self.record_fails = False

    def create_attendance_record(self, subject_id, date, marked_by):
        if self.record_fails:
            raise RuntimeError("record store offline")
        record_id = len(self.records) + 1
        self.records.append((record_id, subject_id, date, marked_by))
        return record_id

    def create_attendance_entries(self, record_id, entries):
        if self.entry_failures:
            self.entry_failures -= 1
            return False
        self.entries[record_id] = list(entries)
        return True


def vector(*values):
    return np.array(values, dtype=float)


@pytest.fixture(autouse=True)
def fresh_metrics():
    monitoring.reset_for_tests()
    yield


@pytest.fixture
def scenario_roster():
    """S1 close to the photo face, S2 far from it, S3 not enrolled."""

    return (
        RosterStudent(student_id="S1", name="Ada", roll_number="01", template=vector(0.2, 0.0)),
        RosterStudent(student_id="S2", name="Ben", roll_number="02", template=vector(0.9, 0.0)),
        RosterStudent(student_id="S3", name="Cy", roll_number="03"),
    )


@pytest.fixture
def session_parts(scenario_roster):
    """Fakes for every collaborator plus deterministic executor and timer hooks."""

    timers = []

    def timer_factory(interval, function):
        timer = FakeTimer(interval, function)
        timers.append(timer)
        return timer

    class Parts:
        roster_source = FakeRosterSource(scenario_roster)
        capture = FakeImageCapture()
        extractor = FakeExtractor(faces=[vector(0.0, 0.0)])
        store = FakeAttendanceStore()
        executor = InlineExecutor()

    Parts.timers = timers
    Parts.timer_factory = staticmethod(timer_factory)
    return Parts


@pytest.fixture
def make_session(session_parts):
    def build(**overrides):
        options = dict(
            roster_source=session_parts.roster_source,
            image_capture=session_parts.capture,
            extractor=session_parts.extractor,
            store=session_parts.store,
            executor=session_parts.executor,
            timer_factory=session_parts.timer_factory,
        )
        options.update(overrides)
        return CaptureSession(**options)

    return build


@pytest.fixture(scope="session", autouse=True)
def close_database_connections():
    """Close database connections once the whole session has finished."""
    yield
    from django.db import connections

    for conn in connections.all():
        conn.close()


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def deferred_executor():
    return DeferredExecutor()
