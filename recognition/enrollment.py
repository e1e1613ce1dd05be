"""Roster snapshots and the enrollment gate for attendance capture."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Hashable, Iterable, Optional, Tuple

from .pipeline import EnrolledTemplate, FeatureVector


@dataclass(frozen=True)
class RosterStudent:
    """A student enrolled in the selected subject, as seen at selection time."""

    student_id: Hashable
    name: str = ""
    roll_number: str = ""
    template: Optional[FeatureVector] = field(default=None, compare=False, repr=False)

    @property
    def has_template(self) -> bool:
        return self.template is not None and self.template.size > 0


@dataclass(frozen=True)
class RosterSnapshot:
    """Enrolled students and their templates, frozen for one capture session."""

    subject_id: Hashable
    subject_name: str
    date: datetime.date
    marked_by: Any
    students: Tuple[RosterStudent, ...] = ()

    @property
    def student_ids(self) -> Tuple[Hashable, ...]:
        return tuple(student.student_id for student in self.students)


def eligible_templates(roster: Iterable[RosterStudent]) -> FrozenSet[EnrolledTemplate]:
    """Return templates for the roster members whose face data is present and non-empty."""

    return frozenset(
        EnrolledTemplate(student_id=student.student_id, vector=student.template)
        for student in roster
        if student.has_template
    )


def can_start_capture(roster: Iterable[RosterStudent]) -> bool:
    """Return ``True`` when at least one roster member has a usable template."""

    return bool(eligible_templates(roster))


__all__ = ["RosterSnapshot", "RosterStudent", "can_start_capture", "eligible_templates"]
