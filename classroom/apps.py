"""
App configuration for the classroom app.

The classroom app owns subjects, students, their enrollments and the
attendance records produced by capture sessions.
"""

from django.apps import AppConfig


class ClassroomConfig(AppConfig):
    """Configuration class for the classroom app."""

    name = "classroom"
    default_auto_field = "django.db.models.BigAutoField"
