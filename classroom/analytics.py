"""Subject scoping, per-record summaries and dashboard statistics."""

from __future__ import annotations

from typing import Dict, Iterable, List

from django.contrib.auth.models import AbstractBaseUser
from django.db.models import Count, Q, QuerySet

from recognition.aggregation import AttendanceSummary, round_half_up, summarize_counts

from .models import AttendanceEntry, AttendanceRecord, Subject, SubjectEnrollment


def visible_subjects(user: AbstractBaseUser) -> QuerySet[Subject]:
    """Staff see every subject; everybody else only the subjects they teach."""

    queryset = Subject.objects.all()
    if getattr(user, "is_staff", False):
        return queryset
    return queryset.filter(professor=user)


def records_with_counts(records: QuerySet[AttendanceRecord]) -> QuerySet[AttendanceRecord]:
    """Annotate records with ``present_total`` and ``entry_total``."""

    return records.annotate(
        entry_total=Count("entries"),
        present_total=Count("entries", filter=Q(entries__status=AttendanceEntry.Status.PRESENT)),
    )


def record_summary(record: AttendanceRecord) -> AttendanceSummary:
    present = getattr(record, "present_total", None)
    total = getattr(record, "entry_total", None)
    if present is None or total is None:
        total = record.entries.count()
        present = record.entries.filter(status=AttendanceEntry.Status.PRESENT).count()
    return summarize_counts(present, total)


def average_attendance(records: Iterable[AttendanceRecord]) -> int:
    """Mean per-record present rate as a rounded percentage.

    A record without entries counts as 0%; no records at all gives 0.
    """

    rates: List[float] = []
    for record in records:
        summary = record_summary(record)
        rates.append(summary.present_count / summary.total_count if summary.total_count else 0.0)
    if not rates:
        return 0
    return round_half_up(sum(rates) / len(rates) * 100)


def dashboard_stats(user: AbstractBaseUser) -> Dict[str, int]:
    subjects = visible_subjects(user)
    records = records_with_counts(AttendanceRecord.objects.filter(subject__in=subjects))
    return {
        "total_subjects": subjects.count(),
        "total_enrollments": SubjectEnrollment.objects.filter(subject__in=subjects).count(),
        "total_sessions": records.count(),
        "average_attendance": average_attendance(records),
    }


__all__ = [
    "average_attendance",
    "dashboard_stats",
    "record_summary",
    "records_with_counts",
    "visible_subjects",
]
