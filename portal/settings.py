"""
Django settings for the port provisioning service.

Every value that differs between environments is read from the process
environment, with defaults suitable for local development and the test suite
(SQLite in the working directory).

Production deployments are expected to run on PostgreSQL: the allocation
service relies on SELECT ... FOR UPDATE row locks, which SQLite does not
provide (SQLite serializes writers at the database level instead).
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name, default):
    return os.environ.get(name, str(default)).lower() in ("1", "true", "yes")


SECRET_KEY = os.environ.get(
    "DJANGO_SECRET_KEY",
    "dev-only-3v0k1h8q2x7m5n4b6c1z9l0p2w8e4r7t",
)

DEBUG = _env_bool("DJANGO_DEBUG", False)

ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")
    if host.strip()
]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "provisioning",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "portal.urls"

WSGI_APPLICATION = "portal.wsgi.application"

# Database

_engine = os.environ.get("DATABASE_ENGINE", "django.db.backends.sqlite3")

if _engine == "django.db.backends.sqlite3":
    DATABASES = {
        "default": {
            "ENGINE": _engine,
            "NAME": os.environ.get("DATABASE_NAME", str(BASE_DIR / "provisioning.sqlite3")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": _engine,
            "NAME": os.environ.get("DATABASE_NAME", "portal"),
            "USER": os.environ.get("DATABASE_USER", "portal"),
            "PASSWORD": os.environ.get("DATABASE_PASSWORD", ""),
            "HOST": os.environ.get("DATABASE_HOST", "localhost"),
            "PORT": os.environ.get("DATABASE_PORT", "5432"),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = "UTC"

# Django REST Framework
# Authentication, sessions and CSRF are handled by the surrounding portal.

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
    "TEST_REQUEST_DEFAULT_FORMAT": "json",
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.LimitOffsetPagination",
    "PAGE_SIZE": int(os.environ.get("API_PAGE_SIZE", "100")),
}

# Port allocation

PORT_ALLOCATION = {
    # Upper bound on CAS claim attempts within one allocation call.
    "MAX_CLAIM_ATTEMPTS": int(os.environ.get("PORT_ALLOCATION_MAX_CLAIM_ATTEMPTS", "25")),
}

# Logging

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "loggers": {
        "provisioning": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "django.db.backends": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
}
