"""Regression coverage for environment-driven settings."""

from __future__ import annotations

import importlib
import sys

from django.core.exceptions import ImproperlyConfigured

import pytest
from cryptography.fernet import Fernet

SETTINGS_MODULES = [
    "attendance_capture.settings.production",
    "attendance_capture.settings.base",
]


def _reload(module_name):
    for module in SETTINGS_MODULES:
        sys.modules.pop(module, None)
    return importlib.import_module(module_name)


@pytest.fixture(autouse=True)
def _restore_settings_modules():
    """Keep the reloaded copies from leaking into other tests."""

    saved = {name: sys.modules.get(name) for name in SETTINGS_MODULES}
    yield
    for name, module in saved.items():
        if module is None:
            sys.modules.pop(name, None)
        else:
            sys.modules[name] = module


def test_development_face_key_is_stable(monkeypatch):
    monkeypatch.delenv("FACE_DATA_ENCRYPTION_KEY", raising=False)

    first = _reload("attendance_capture.settings.base").FACE_DATA_ENCRYPTION_KEY
    second = _reload("attendance_capture.settings.base").FACE_DATA_ENCRYPTION_KEY

    assert first == second
    token = Fernet(first).encrypt(b"template")
    assert Fernet(second).decrypt(token) == b"template"


def test_explicit_face_key_must_be_valid(monkeypatch):
    monkeypatch.setenv("FACE_DATA_ENCRYPTION_KEY", "not-a-fernet-key")

    with pytest.raises(ImproperlyConfigured):
        _reload("attendance_capture.settings.base")


def test_recognition_settings_from_environment(monkeypatch):
    monkeypatch.setenv("RECOGNITION_DISTANCE_THRESHOLD", "0.45")
    monkeypatch.setenv("RECOGNITION_AUTO_RESET_SECONDS", "5")
    monkeypatch.setenv("RECOGNITION_DEEPFACE_ENFORCE_DETECTION", "false")

    base = _reload("attendance_capture.settings.base")

    assert base.RECOGNITION_DISTANCE_THRESHOLD == 0.45
    assert base.RECOGNITION_AUTO_RESET_SECONDS == 5.0
    assert base.RECOGNITION_DEEPFACE_OPTIONS["enforce_detection"] is False


def test_negative_threshold_is_rejected(monkeypatch):
    monkeypatch.setenv("RECOGNITION_DISTANCE_THRESHOLD", "-1")

    with pytest.raises(ImproperlyConfigured):
        _reload("attendance_capture.settings.base")


def test_production_database_configuration(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    monkeypatch.setenv("DJANGO_ALLOWED_HOSTS", "attendance.example.edu")
    monkeypatch.setenv("DB_NAME", "ci_db")
    monkeypatch.setenv("DB_USER", "ci_user")
    monkeypatch.setenv("DB_PASSWORD", "ci_password")
    monkeypatch.setenv("DB_HOST", "postgres")
    monkeypatch.setenv("DB_PORT", "6543")
    monkeypatch.setenv("DB_CONN_MAX_AGE", "120")

    settings = _reload("attendance_capture.settings.production")

    assert settings.DEBUG is False
    assert settings.ALLOWED_HOSTS == ["attendance.example.edu"]
    database = settings.DATABASES["default"]
    assert database["ENGINE"] == "django.db.backends.postgresql"
    assert database["NAME"] == "ci_db"
    assert database["HOST"] == "postgres"
    assert database["PORT"] == "6543"
    assert database["CONN_MAX_AGE"] == 120


def test_sentry_events_drop_credentials(monkeypatch):
    monkeypatch.setenv("DJANGO_ALLOWED_HOSTS", "attendance.example.edu")
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    settings = _reload("attendance_capture.settings.production")

    event = {
        "request": {"headers": {"Authorization": "Bearer x", "Accept": "text/html"}},
        "user": {"id": 1},
    }
    cleaned = settings._strip_sensitive_data(event, None)

    assert cleaned["request"]["headers"] == {"Authorization": "[Filtered]", "Accept": "text/html"}
    assert "user" not in cleaned
