"""
WSGI config for the attendance capture project.

Defaults to the hardened production settings; export
``DJANGO_SETTINGS_MODULE=attendance_capture.settings`` for local servers.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "attendance_capture.settings.production")

application = get_wsgi_application()
