"""
Django settings for the LOUD BRANDS backend.

Every deploy-specific value is read from the environment (or a ``.env`` file)
through python-decouple.
"""
from decimal import Decimal
from pathlib import Path

from decouple import Csv, config

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config("SECRET_KEY", default="django-insecure-loudbrands-dev-key")
DEBUG = config("DEBUG", default=False, cast=bool)
ALLOWED_HOSTS = config("ALLOWED_HOSTS", default="localhost,127.0.0.1", cast=Csv())

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "orders",
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

ROOT_URLCONF = "loudbrands.urls"

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

WSGI_APPLICATION = "loudbrands.wsgi.application"

# SQLite for local work, PostgreSQL (psycopg2) in production
DB_ENGINE = config("DB_ENGINE", default="django.db.backends.sqlite3")

if DB_ENGINE.endswith("sqlite3"):
    DATABASES = {
        "default": {
            "ENGINE": DB_ENGINE,
            "NAME": config("DB_NAME", default=str(BASE_DIR / "db.sqlite3")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": DB_ENGINE,
            "NAME": config("DB_NAME", default="loudbrands"),
            "USER": config("DB_USER", default="loudbrands"),
            "PASSWORD": config("DB_PASSWORD", default=""),
            "HOST": config("DB_HOST", default="localhost"),
            "PORT": config("DB_PORT", default="5432"),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Algiers"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "COERCE_DECIMAL_TO_STRING": True,
}

# Order totals
# Stored totals within this many currency units of the recomputed value are
# treated as consistent. Legacy rows were written with float arithmetic.
ORDER_TOTALS_TOLERANCE = config("ORDER_TOTALS_TOLERANCE", default="0.01", cast=Decimal)

# Google Pub/Sub
PUBSUB_ENABLED = config("PUBSUB_ENABLED", default=False, cast=bool)
PUBSUB_PROJECT_ID = config("PUBSUB_PROJECT_ID", default="loudbrands-local")
PUBSUB_TOPIC_ORDER_EVENTS = config("PUBSUB_TOPIC_ORDER_EVENTS", default="order-events")

# Yalidine shipping carrier
YALIDINE_API_URL = config("YALIDINE_API_URL", default="https://api.yalidine.app/v1")
YALIDINE_API_ID = config("YALIDINE_API_ID", default="")
YALIDINE_API_TOKEN = config("YALIDINE_API_TOKEN", default="")
YALIDINE_TIMEOUT = config("YALIDINE_TIMEOUT", default=15, cast=int)
YALIDINE_FROM_WILAYA = config("YALIDINE_FROM_WILAYA", default="Alger")

# OpenTelemetry
OTEL_ENABLED = config("OTEL_ENABLED", default=False, cast=bool)
OTEL_SERVICE_NAME = config("OTEL_SERVICE_NAME", default="loudbrands-backend")
OTEL_EXPORTER_OTLP_ENDPOINT = config(
    "OTEL_EXPORTER_OTLP_ENDPOINT", default="http://localhost:4318/v1/traces"
)

LOG_LEVEL = config("LOG_LEVEL", default="INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
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
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "orders": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
