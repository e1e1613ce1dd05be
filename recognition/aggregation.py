"""Turn a match result into per-student attendance decisions and summaries."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, AbstractSet, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple

from .enrollment import RosterSnapshot, RosterStudent

if TYPE_CHECKING:
    from .collaborators import AttendanceStore

logger = logging.getLogger(__name__)


class AttendanceStatus(str, Enum):
    """Attendance outcome for one student."""

    PRESENT = "present"
    ABSENT = "absent"


@dataclass(frozen=True)
class AttendanceDecision:
    """Ordered ``student_id -> status`` mapping covering exactly one roster."""

    entries: Tuple[Tuple[Hashable, AttendanceStatus], ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def as_dict(self) -> Dict[Hashable, AttendanceStatus]:
        return dict(self.entries)

    def status_for(self, student_id: Hashable) -> Optional[AttendanceStatus]:
        return self.as_dict().get(student_id)

    @property
    def present_ids(self) -> Tuple[Hashable, ...]:
        return tuple(sid for sid, status in self.entries if status is AttendanceStatus.PRESENT)


@dataclass(frozen=True)
class AttendanceSummary:
    present_count: int
    absent_count: int
    total_count: int
    present_percentage: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "present_count": self.present_count,
            "absent_count": self.absent_count,
            "total_count": self.total_count,
            "present_percentage": self.present_percentage,
        }


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (12.5 -> 13)."""

    return int(math.floor(value + 0.5))


def decide(roster: Iterable[RosterStudent], matched: AbstractSet[Hashable]) -> AttendanceDecision:
    """Mark each roster member present iff their id is in ``matched``.

    Every roster member appears exactly once, in roster order; a repeated id
    keeps its first position. Ids in ``matched`` that are not on the roster
    are ignored.
    """

    seen: set[Hashable] = set()
    entries: List[Tuple[Hashable, AttendanceStatus]] = []
    for student in roster:
        if student.student_id in seen:
            continue
        seen.add(student.student_id)
        status = AttendanceStatus.PRESENT if student.student_id in matched else AttendanceStatus.ABSENT
        entries.append((student.student_id, status))

    stray = set(matched) - seen
    if stray:
        logger.debug("Ignoring %d matched ids outside the roster", len(stray))

    return AttendanceDecision(entries=tuple(entries))


def summarize_counts(present_count: int, total_count: int) -> AttendanceSummary:
    """Build a summary from raw counts; an empty roster is 0% present."""

    percentage = round_half_up(present_count / total_count * 100) if total_count else 0
    return AttendanceSummary(
        present_count=present_count,
        absent_count=total_count - present_count,
        total_count=total_count,
        present_percentage=percentage,
    )


def summarize(decision: AttendanceDecision) -> AttendanceSummary:
    return summarize_counts(len(decision.present_ids), len(decision))


def to_persistable_entries(decision: AttendanceDecision) -> List[Dict[str, object]]:
    """Flatten a decision into the ``{"student_id", "status"}`` rows the store expects."""

    return [{"student_id": sid, "status": status.value} for sid, status in decision.entries]


class PersistenceError(Exception):
    """Raised when an attendance record or its entries could not be saved.

    ``record_id`` is set when the record itself was created before the
    failure, so a retry can attach entries to it instead of creating another.
    """

    def __init__(self, message: str, *, record_id: Optional[Hashable] = None) -> None:
        super().__init__(message)
        self.record_id = record_id


def persist_decision(
    store: "AttendanceStore",
    roster: RosterSnapshot,
    decision: AttendanceDecision,
    *,
    existing_record_id: Optional[Hashable] = None,
) -> Hashable:
    """Save one attendance record plus one entry per roster member.

    Both store calls form a single unit of work: any failure raises
    :class:`PersistenceError` and no partial success is reported.

    Returns:
        The id of the attendance record that now holds every entry.
    """

    entries = to_persistable_entries(decision)
    roster_size = len(set(roster.student_ids))
    if len(entries) != roster_size:
        raise PersistenceError(
            f"Decision has {len(entries)} entries for a roster of {roster_size} students.",
            record_id=existing_record_id,
        )

    record_id = existing_record_id
    if record_id is None:
        try:
            record_id = store.create_attendance_record(
                roster.subject_id, roster.date, roster.marked_by
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to create attendance record: {exc}") from exc

    try:
        saved = store.create_attendance_entries(record_id, entries)
    except Exception as exc:
        raise PersistenceError(
            f"Failed to save attendance entries: {exc}", record_id=record_id
        ) from exc
    if not saved:
        raise PersistenceError("Failed to save attendance entries", record_id=record_id)

    return record_id


def decision_rows(
    roster: RosterSnapshot, decision: Optional[AttendanceDecision]
) -> List[Mapping[str, object]]:
    """Per-student rows for review screens, including template availability."""

    statuses = decision.as_dict() if decision is not None else {}
    rows = []
    for student in roster.students:
        status = statuses.get(student.student_id)
        rows.append(
            {
                "student_id": student.student_id,
                "name": student.name,
                "roll_number": student.roll_number,
                "has_template": student.has_template,
                "status": status.value if status is not None else None,
            }
        )
    return rows


__all__ = [
    "AttendanceDecision",
    "AttendanceStatus",
    "AttendanceSummary",
    "PersistenceError",
    "decide",
    "decision_rows",
    "persist_decision",
    "round_half_up",
    "summarize",
    "summarize_counts",
    "to_persistable_entries",
]
