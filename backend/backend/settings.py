"""
Django settings for the dunning backend project.

Values are read from environment variables so the same module serves local
development, CI and deployed workers.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# load .env from the repository root; real environment variables win
load_dotenv(BASE_DIR.parent / ".env")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-dunning-dev-key")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [host for host in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if host]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "dunning.apps.DunningConfig",
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

ROOT_URLCONF = "backend.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

ASGI_APPLICATION = "backend.asgi.application"

if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "postgres"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "dunning",
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
}

# Email
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "billing@example.com")

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)

# Dunning
DUNNING = {
    "ENABLED": _env_bool("DUNNING_ENABLED", True),
    "POLICY": {
        "max_retries": int(os.getenv("DUNNING_MAX_RETRIES", "3")),
        "retry_intervals_days": [
            int(days) for days in os.getenv("DUNNING_RETRY_INTERVALS_DAYS", "1,3,7").split(",") if days.strip()
        ],
        "grace_period_days": int(os.getenv("DUNNING_GRACE_PERIOD_DAYS", "14")),
        "email_on_first_failure": _env_bool("DUNNING_EMAIL_ON_FIRST_FAILURE", True),
        "email_on_final_failure": _env_bool("DUNNING_EMAIL_ON_FINAL_FAILURE", True),
    },
    "GATEWAY_POLICIES": {},
    "CHARGE_GATEWAY": os.getenv("DUNNING_CHARGE_GATEWAY") or None,
    "NOTIFIER": "dunning.services.notifications.DjangoMailNotifier",
    "REPOSITORY": "dunning.services.orm_repository.DjangoDunningRepository",
    "CHARGE_TIMEOUT_SECONDS": float(os.getenv("DUNNING_CHARGE_TIMEOUT_SECONDS", "30")),
    "NOTIFY_TIMEOUT_SECONDS": float(os.getenv("DUNNING_NOTIFY_TIMEOUT_SECONDS", "10")),
    "BATCH_MAX_WORKERS": int(os.getenv("DUNNING_BATCH_MAX_WORKERS", "1")),
    "BATCH_LOCK_TIMEOUT_SECONDS": int(os.getenv("DUNNING_BATCH_LOCK_TIMEOUT_SECONDS", "1800")),
    "JOB_INTERVAL_MINUTES": 60,
    "FROM_EMAIL": os.getenv("DUNNING_FROM_EMAIL", DEFAULT_FROM_EMAIL),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "loggers": {
        "dunning": {
            "handlers": ["console"],
            "level": os.getenv("DUNNING_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
