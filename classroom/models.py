"""
Database models for the classroom app.

Subjects are taught by a professor and have students enrolled in them. Each
confirmed capture session produces one ``AttendanceRecord`` with one
``AttendanceEntry`` per enrolled student.
"""

from __future__ import annotations

from typing import Optional

from django.contrib.auth.models import User
from django.db import models
from django.utils import timezone

import numpy as np

from src.common import decrypt_template, encrypt_template


class Subject(models.Model):
    """A course whose attendance is taken."""

    name = models.CharField(max_length=255, help_text="Display name of the subject.")
    code = models.CharField(max_length=32, unique=True, help_text="Short unique course code.")
    department = models.CharField(max_length=255, blank=True)
    professor = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subjects",
        help_text="The professor who teaches the subject.",
    )

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.code} - {self.name}"


class Student(models.Model):
    """
    A student who can be enrolled in subjects.

    ``face_template`` holds the Fernet-encrypted bytes of the student's
    enrolled feature vector. Students without a template are still part of
    every roster they belong to but are never matched.
    """

    name = models.CharField(max_length=255)
    roll_number = models.CharField(max_length=64, unique=True)
    email = models.EmailField(blank=True)
    department = models.CharField(max_length=255, blank=True)
    face_template = models.BinaryField(
        null=True,
        blank=True,
        editable=False,
        help_text="Encrypted face template computed at enrollment.",
    )
    template_updated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["roll_number"]

    def __str__(self):
        return f"{self.roll_number} - {self.name}"

    @property
    def has_template(self) -> bool:
        return bool(self.face_template)

    def get_template(self) -> Optional[np.ndarray]:
        """Return the decrypted template, or ``None`` when not enrolled."""

        if not self.face_template:
            return None
        return decrypt_template(bytes(self.face_template))

    def set_template(self, vector: np.ndarray, *, save: bool = True) -> None:
        self.face_template = encrypt_template(np.asarray(vector, dtype=np.float64))
        self.template_updated_at = timezone.now()
        if save:
            self.save(update_fields=["face_template", "template_updated_at"])

    def clear_template(self) -> None:
        self.face_template = None
        self.template_updated_at = None
        self.save(update_fields=["face_template", "template_updated_at"])


class SubjectEnrollment(models.Model):
    """Membership of a student in a subject's roster."""

    subject = models.ForeignKey(Subject, on_delete=models.CASCADE, related_name="enrollments")
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="enrollments")
    enrolled_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["subject", "student"], name="classroom_unique_subject_student"
            )
        ]

    def __str__(self):
        return f"{self.student} in {self.subject}"


class AttendanceRecord(models.Model):
    """
    One confirmed attendance capture for a subject on a date.

    Several records may exist for the same subject and date when attendance
    is taken more than once.
    """

    subject = models.ForeignKey(
        Subject, on_delete=models.CASCADE, related_name="attendance_records"
    )
    date = models.DateField(default=timezone.localdate, db_index=True)
    marked_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        related_name="marked_attendance_records",
        help_text="The user who confirmed the attendance.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-date", "-created_at"]
        indexes = [
            models.Index(fields=["subject", "date"], name="classroom_record_subject_date"),
        ]

    def __str__(self):
        return f"{self.subject.code} on {self.date}"


class AttendanceEntry(models.Model):
    """Present/absent status of one student within an attendance record."""

    class Status(models.TextChoices):
        PRESENT = "present", "Present"
        ABSENT = "absent", "Absent"

    record = models.ForeignKey(AttendanceRecord, on_delete=models.CASCADE, related_name="entries")
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="attendance_entries")
    status = models.CharField(max_length=16, choices=Status.choices)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["record", "student"], name="classroom_unique_record_student"
            )
        ]

    def __str__(self):
        return f"{self.student.roll_number}: {self.status}"
