"""Production settings overriding the defaults with hardened options."""

from __future__ import annotations

import logging
import os
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from .base import *  # noqa: F401,F403
from .base import DATABASES, _get_bool_env, _get_float_env, build_postgres_database_config

DEBUG = False

if DATABASES["default"].get("ENGINE") == "django.db.backends.sqlite3":
    DATABASES["default"] = build_postgres_database_config()

if not ALLOWED_HOSTS:  # noqa: F405
    raise ImproperlyConfigured(
        "DJANGO_ALLOWED_HOSTS must be provided (comma separated) in production."
    )

SECURE_SSL_REDIRECT = _get_bool_env("DJANGO_SECURE_SSL_REDIRECT", default=True)
SECURE_HSTS_SECONDS = 3600
SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True

_SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie"}


def _strip_sensitive_data(event: dict[str, Any], _hint: object | None) -> dict[str, Any]:
    """Drop credentials and user identity from outgoing Sentry events."""

    request = event.get("request")
    if isinstance(request, dict) and isinstance(request.get("headers"), dict):
        for header in list(request["headers"]):
            if header.lower() in _SENSITIVE_HEADERS:
                request["headers"][header] = "[Filtered]"
    event.pop("user", None)
    return event


def initialize_sentry() -> None:
    """Initialise Sentry when ``SENTRY_DSN`` is supplied via the environment."""

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return

    sentry_sdk.init(
        dsn=dsn,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        release=os.environ.get("SENTRY_RELEASE"),
        integrations=[
            DjangoIntegration(transaction_style="url"),
            CeleryIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=_get_float_env("SENTRY_TRACES_SAMPLE_RATE", 0.0, minimum=0.0),
        send_default_pii=False,
        before_send=_strip_sensitive_data,
    )


initialize_sentry()
