"""ORM-backed roster source and attendance store used by capture sessions."""

from __future__ import annotations

import datetime
import logging
from functools import wraps
from typing import Any, Hashable, Mapping, Sequence

from django.db import DatabaseError, close_old_connections, transaction

from recognition.enrollment import RosterSnapshot, RosterStudent
from src.common import InvalidToken

from .models import AttendanceEntry, AttendanceRecord, Student, Subject

logger = logging.getLogger(__name__)


def _student_template(student: Student):
    try:
        return student.get_template()
    except (InvalidToken, ValueError):
        logger.warning("Failed to decrypt face template for student %s.", student.pk, exc_info=True)
        return None


class OrmRosterSource:
    """Load a subject's enrolled students with their decrypted templates."""

    def load_roster(
        self, subject_id: Hashable, *, date: datetime.date, marked_by: Any
    ) -> RosterSnapshot:
        subject = Subject.objects.get(pk=subject_id)
        students = Student.objects.filter(enrollments__subject=subject).order_by("roll_number")
        roster = tuple(
            RosterStudent(
                student_id=student.pk,
                name=student.name,
                roll_number=student.roll_number,
                template=_student_template(student),
            )
            for student in students
        )
        logger.debug("Loaded roster of %d students for subject %s", len(roster), subject.code)
        return RosterSnapshot(
            subject_id=subject.pk,
            subject_name=subject.name,
            date=date,
            marked_by=marked_by,
            students=roster,
        )


def _close_stale_connections() -> None:
    # An open transaction belongs to the caller.
    if not transaction.get_connection().in_atomic_block:
        close_old_connections()


def _with_fresh_connection(method):
    """Drop stale connections around ORM work run outside the request cycle.

    Sessions persist from executor threads, which never see the request
    signals Django uses to recycle connections past ``CONN_MAX_AGE``.
    """

    @wraps(method)
    def wrapper(*args, **kwargs):
        _close_stale_connections()
        try:
            return method(*args, **kwargs)
        finally:
            _close_stale_connections()

    return wrapper


class OrmAttendanceStore:
    """Persist attendance records and their entries through the ORM."""

    @_with_fresh_connection
    def create_attendance_record(
        self, subject_id: Hashable, date: datetime.date, marked_by: Any
    ) -> Hashable:
        record = AttendanceRecord.objects.create(
            subject_id=subject_id, date=date, marked_by_id=marked_by
        )
        return record.pk

    @_with_fresh_connection
    def create_attendance_entries(
        self, record_id: Hashable, entries: Sequence[Mapping[str, object]]
    ) -> bool:
        rows = [
            AttendanceEntry(record_id=record_id, student_id=entry["student_id"], status=entry["status"])
            for entry in entries
        ]
        try:
            with transaction.atomic():
                AttendanceEntry.objects.filter(record_id=record_id).delete()
                AttendanceEntry.objects.bulk_create(rows)
        except DatabaseError:
            logger.exception("Failed to save %d attendance entries for record %s", len(rows), record_id)
            return False
        return True


__all__ = ["OrmAttendanceStore", "OrmRosterSource"]
