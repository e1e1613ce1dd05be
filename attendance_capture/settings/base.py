"""
Django settings for the classroom attendance capture project.

Every deployment-specific value is read from the environment. The typed
helpers below reject malformed values with ``ImproperlyConfigured`` so a bad
variable fails at start-up instead of surfacing mid-session.
"""

import base64
import hashlib
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import dj_database_url
from cryptography.fernet import Fernet

BASE_DIR = Path(__file__).resolve().parent.parent.parent


# --- Environment helpers ---


def _get_bool_env(var_name: str, default: bool = False) -> bool:
    """Return a boolean from an environment variable."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    return raw_value.lower() in {"1", "true", "yes", "on"}


def _parse_int_env(var_name: str, default: int, *, minimum: int | None = None) -> int:
    """Return an integer from the environment, enforcing an optional minimum."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = int(raw_value)
    except ValueError as exc:  # pragma: no cover
        raise ImproperlyConfigured(f"{var_name} must be an integer if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")

    return value


def _get_float_env(
    var_name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    """Return a float from the environment with optional lower bound enforcement."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = float(raw_value)
    except ValueError as exc:  # pragma: no cover
        raise ImproperlyConfigured(f"{var_name} must be a float if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")

    return value


def _get_list_env(var_name: str, default: Sequence[str]) -> list[str]:
    """Return a comma separated environment variable as a list of strings."""

    raw_value = os.environ.get(var_name)
    if not raw_value:
        return list(default)
    return [item.strip() for item in raw_value.split(",") if item.strip()]


# --- Security Settings ---

# Detect if we're running tests
TESTING = "test" in sys.argv or (len(sys.argv) > 0 and "pytest" in sys.argv[0])

DEFAULT_SECRET_KEY = "a-secure-default-key-for-development-only"

DEBUG = TESTING or _get_bool_env("DJANGO_DEBUG", default=False)

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", DEFAULT_SECRET_KEY)
if SECRET_KEY == DEFAULT_SECRET_KEY and not DEBUG:
    raise ImproperlyConfigured(
        "DJANGO_SECRET_KEY must be set to a secure value when DJANGO_DEBUG is not enabled."
    )

LOCALHOST_ALIASES = ("localhost", "127.0.0.1", "[::1]", "testserver")
ALLOWED_HOSTS = _get_list_env("DJANGO_ALLOWED_HOSTS", LOCALHOST_ALIASES if DEBUG else ())


def _validate_fernet_key(key: str | bytes, setting_name: str) -> bytes:
    """Ensure the provided key material is a valid Fernet key."""

    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        Fernet(key_bytes)
    except (ValueError, TypeError) as exc:
        raise ImproperlyConfigured(
            f"{setting_name} must be a valid 32-byte base64-encoded Fernet key."
        ) from exc
    return key_bytes


def _development_key(var_name: str) -> bytes:
    """Derive a stable Fernet key from the secret key for DEBUG and test runs."""

    digest = hashlib.sha256(f"{SECRET_KEY}:{var_name}".encode()).digest()
    return base64.urlsafe_b64encode(digest)


def _load_face_data_encryption_key() -> bytes:
    """Load the Fernet key used to encrypt stored face templates."""

    key = os.environ.get("FACE_DATA_ENCRYPTION_KEY")
    if key:
        return _validate_fernet_key(key, "FACE_DATA_ENCRYPTION_KEY")

    if DEBUG:
        return _development_key("FACE_DATA_ENCRYPTION_KEY")

    raise ImproperlyConfigured(
        "FACE_DATA_ENCRYPTION_KEY environment variable must be set in production environments."
    )


FACE_DATA_ENCRYPTION_KEY = _load_face_data_encryption_key()


# --- Application Configuration ---

INSTALLED_APPS = [
    # Custom applications for this project
    "classroom.apps.ClassroomConfig",
    "recognition.apps.RecognitionConfig",
    # Third-party packages
    "rest_framework",
    # Core Django applications
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "attendance_capture.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "attendance_capture.wsgi.application"


# --- Database Configuration ---

default_db_url = os.environ.get("DATABASE_URL", f"sqlite:///{(BASE_DIR / 'db.sqlite3').as_posix()}")

DATABASES = {
    "default": dj_database_url.parse(
        default_db_url,
        conn_max_age=_parse_int_env("DATABASE_CONN_MAX_AGE", 0, minimum=0),
    ),
}


def build_postgres_database_config() -> dict[str, Any]:
    """Return a PostgreSQL configuration derived from discrete environment variables."""

    return {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "attendance"),
        "USER": os.environ.get("DB_USER", "attendance"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "attendance"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": _parse_int_env("DB_CONN_MAX_AGE", 600, minimum=0),
    }


DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]


# --- Internationalization ---

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = Path(os.environ.get("DJANGO_STATIC_ROOT", BASE_DIR / "staticfiles"))


# --- REST framework ---

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
}


# --- Celery ---

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
CELERY_TASK_ALWAYS_EAGER = _get_bool_env("CELERY_TASK_ALWAYS_EAGER", default=TESTING)


# --- Logging ---

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("DJANGO_LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "recognition": {
            "handlers": ["console"],
            "level": os.environ.get("RECOGNITION_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}


# --- Recognition ---

# Maximum Euclidean distance between a detected face and a stored template
# for the student to be marked present. Lower values are stricter.
RECOGNITION_DISTANCE_THRESHOLD = _get_float_env(
    "RECOGNITION_DISTANCE_THRESHOLD", 0.6, minimum=0.0
)

# Delay between a successful save and the automatic reset to an idle session.
RECOGNITION_AUTO_RESET_SECONDS = _get_float_env(
    "RECOGNITION_AUTO_RESET_SECONDS", 3.0, minimum=0.0
)

RECOGNITION_SESSION_WORKERS = _parse_int_env("RECOGNITION_SESSION_WORKERS", 2, minimum=1)

RECOGNITION_CAMERA_SOURCE = _parse_int_env("RECOGNITION_CAMERA_SOURCE", 0, minimum=0)
RECOGNITION_CAMERA_WARMUP_SECONDS = _get_float_env(
    "RECOGNITION_CAMERA_WARMUP_SECONDS", 2.0, minimum=0.0
)
RECOGNITION_CAPTURE_TIMEOUT_SECONDS = _get_float_env(
    "RECOGNITION_CAPTURE_TIMEOUT_SECONDS", 2.0, minimum=0.0
)


def _build_deepface_options() -> dict[str, object]:
    """Return DeepFace tuning parameters with environment overrides."""

    # Facenet produces 128-dimensional descriptors, matching the template size.
    return {
        "model": os.environ.get("RECOGNITION_DEEPFACE_MODEL", "Facenet"),
        "detector_backend": os.environ.get("RECOGNITION_DEEPFACE_DETECTOR", "opencv"),
        "enforce_detection": _get_bool_env("RECOGNITION_DEEPFACE_ENFORCE_DETECTION", True),
    }


RECOGNITION_DEEPFACE_OPTIONS = _build_deepface_options()

# Start loading the face model in the background when the first capture session is created.
RECOGNITION_WARM_UP_MODEL = _get_bool_env("RECOGNITION_WARM_UP_MODEL", default=not TESTING)

# Largest decoded enrollment photo accepted by the API, in bytes.
RECOGNITION_MAX_UPLOAD_SIZE = _parse_int_env(
    "RECOGNITION_MAX_UPLOAD_SIZE", 5 * 1024 * 1024, minimum=1
)
