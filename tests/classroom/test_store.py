import datetime
from unittest.mock import MagicMock

import numpy as np
import pytest

from classroom import store as store_module
from classroom.analytics import average_attendance, dashboard_stats, records_with_counts, visible_subjects
from classroom.models import AttendanceEntry, AttendanceRecord, Student, Subject, SubjectEnrollment
from classroom.store import OrmAttendanceStore, OrmRosterSource
from recognition.aggregation import decide, persist_decision
from recognition.enrollment import can_start_capture
from src.common import TemplateCipher

pytestmark = pytest.mark.django_db

DAY = datetime.date(2024, 3, 4)


@pytest.fixture
def professor(django_user_model):
    return django_user_model.objects.create_user(username="prof", password="pass1234")


@pytest.fixture
def subject(professor):
    subject = Subject.objects.create(name="Biology", code="BIO1", professor=professor)
    ada = Student.objects.create(name="Ada", roll_number="02")
    ben = Student.objects.create(name="Ben", roll_number="01")
    ada.set_template(np.array([0.1, 0.2, 0.3]))
    SubjectEnrollment.objects.create(subject=subject, student=ada)
    SubjectEnrollment.objects.create(subject=subject, student=ben)
    Student.objects.create(name="Not enrolled", roll_number="99")
    return subject


def test_student_template_is_encrypted_at_rest():
    student = Student.objects.create(name="Cy", roll_number="03")
    student.set_template(np.array([0.5, -1.25]))
    student.refresh_from_db()

    assert student.has_template
    assert bytes(student.face_template) != np.array([0.5, -1.25]).tobytes()
    np.testing.assert_allclose(student.get_template(), [0.5, -1.25])

    student.clear_template()
    assert student.get_template() is None


def test_roster_source_loads_enrolled_students_with_templates(subject, professor):
    roster = OrmRosterSource().load_roster(subject.pk, date=DAY, marked_by=professor.pk)

    assert roster.subject_name == "Biology"
    assert [student.name for student in roster.students] == ["Ben", "Ada"]
    assert [student.has_template for student in roster.students] == [False, True]
    np.testing.assert_allclose(roster.students[1].template, [0.1, 0.2, 0.3])
    assert can_start_capture(roster.students)


def test_roster_source_treats_undecryptable_template_as_missing(subject, professor):
    student = Student.objects.get(roll_number="02")
    Student.objects.filter(pk=student.pk).update(face_template=b"garbage")

    roster = OrmRosterSource().load_roster(subject.pk, date=DAY, marked_by=professor.pk)

    assert not any(s.has_template for s in roster.students)


def test_roster_source_treats_truncated_template_as_missing(subject, professor):
    truncated = TemplateCipher().encrypt(b"12345")
    Student.objects.filter(roll_number="02").update(face_template=truncated)

    roster = OrmRosterSource().load_roster(subject.pk, date=DAY, marked_by=professor.pk)

    assert [s.has_template for s in roster.students] == [False, False]


def test_attendance_store_persists_decision(subject, professor):
    roster = OrmRosterSource().load_roster(subject.pk, date=DAY, marked_by=professor.pk)
    ada = Student.objects.get(roll_number="02")

    record_id = persist_decision(OrmAttendanceStore(), roster, decide(roster.students, frozenset({ada.pk})))

    record = AttendanceRecord.objects.get(pk=record_id)
    assert record.marked_by == professor
    assert record.date == DAY
    assert dict(record.entries.values_list("student__name", "status")) == {
        "Ada": "present",
        "Ben": "absent",
    }


def test_attendance_store_allows_several_records_per_day(subject, professor):
    store = OrmAttendanceStore()

    first = store.create_attendance_record(subject.pk, DAY, professor.pk)
    second = store.create_attendance_record(subject.pk, DAY, professor.pk)

    assert first != second


def test_attendance_store_reports_failed_entries(subject, professor):
    store = OrmAttendanceStore()
    record_id = store.create_attendance_record(subject.pk, DAY, professor.pk)
    ada = Student.objects.get(roll_number="02")
    duplicate = [{"student_id": ada.pk, "status": "present"}] * 2

    assert store.create_attendance_entries(record_id, duplicate) is False
    assert AttendanceEntry.objects.filter(record_id=record_id).count() == 0


def test_attendance_store_retry_replaces_entries(subject, professor):
    store = OrmAttendanceStore()
    record_id = store.create_attendance_record(subject.pk, DAY, professor.pk)
    ada = Student.objects.get(roll_number="02")

    assert store.create_attendance_entries(record_id, [{"student_id": ada.pk, "status": "absent"}])
    assert store.create_attendance_entries(record_id, [{"student_id": ada.pk, "status": "present"}])

    assert list(AttendanceEntry.objects.filter(record_id=record_id).values_list("status", flat=True)) == [
        "present"
    ]


@pytest.mark.django_db(transaction=True)
def test_attendance_store_recycles_stale_connections(subject, professor, monkeypatch):
    close_old_connections = MagicMock()
    monkeypatch.setattr(store_module, "close_old_connections", close_old_connections)
    store = OrmAttendanceStore()

    record_id = store.create_attendance_record(subject.pk, DAY, professor.pk)
    assert close_old_connections.call_count == 2

    assert store.create_attendance_entries(record_id, [])
    assert close_old_connections.call_count == 4


def test_attendance_store_keeps_caller_transaction_open(subject, professor, monkeypatch):
    close_old_connections = MagicMock()
    monkeypatch.setattr(store_module, "close_old_connections", close_old_connections)

    OrmAttendanceStore().create_attendance_record(subject.pk, DAY, professor.pk)

    close_old_connections.assert_not_called()


def test_visible_subjects(subject, professor, django_user_model):
    staff = django_user_model.objects.create_user(username="staff", password="x", is_staff=True)
    stranger = django_user_model.objects.create_user(username="stranger", password="x")
    Subject.objects.create(name="Art", code="ART1")

    assert list(visible_subjects(professor)) == [subject]
    assert visible_subjects(staff).count() == 2
    assert not visible_subjects(stranger).exists()


def test_average_attendance_counts_empty_records_as_zero(subject, professor):
    ada = Student.objects.get(roll_number="02")
    full = AttendanceRecord.objects.create(subject=subject, date=DAY, marked_by=professor)
    AttendanceEntry.objects.create(record=full, student=ada, status="present")
    AttendanceRecord.objects.create(subject=subject, date=DAY, marked_by=professor)

    records = records_with_counts(AttendanceRecord.objects.all())

    assert average_attendance(records) == 50
    assert average_attendance([]) == 0


def test_dashboard_stats_without_records(subject, professor):
    assert dashboard_stats(professor) == {
        "total_subjects": 1,
        "total_enrollments": 2,
        "total_sessions": 0,
        "average_attendance": 0,
    }
