"""
App configuration for the recognition app.

On start-up the app installs the process-wide capture session registry and
hooks it to Django's logout signal so a user's session does not outlive
their login.
"""

from django.apps import AppConfig


class RecognitionConfig(AppConfig):
    """Configuration class for the recognition app."""

    name = "recognition"

    def ready(self):
        from django.contrib.auth.signals import user_logged_out

        from .registry import discard_session_on_logout, install_session_registry

        install_session_registry()
        user_logged_out.connect(
            discard_session_on_logout, dispatch_uid="recognition.discard_capture_session"
        )
