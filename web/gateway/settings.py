"""Django settings for the marketplace order gateway.

Every value is read from the environment with a development default. Code
consumes optional values through ``getattr(settings, NAME, default)``.
"""

import os
from decimal import Decimal
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders.apps.OrdersConfig",
    "apps.payments.apps.PaymentsConfig",
    "apps.monitoring.apps.MonitoringConfig",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
    "gateway.middleware.ActorMiddleware",
]

ROOT_URLCONF = "gateway.urls"
WSGI_APPLICATION = "gateway.wsgi.application"

if os.getenv("DB_NAME"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME"),
            "USER": os.getenv("DB_USER", "postgres"),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", "localhost"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
            # writers queue on the database lock instead of failing on upgrade
            "OPTIONS": {"transaction_mode": "IMMEDIATE", "timeout": 20},
            "TEST": {"NAME": os.getenv("SQLITE_TEST_PATH", str(BASE_DIR / "test_db.sqlite3"))},
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "gateway-throttle",
    }
}

REST_FRAMEWORK = {
    # identity is forwarded by the upstream auth layer (see ActorMiddleware)
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser",
                               "rest_framework.parsers.FormParser"],
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "120/min"),
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "30/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "orders_status": os.getenv("THROTTLE_ORDERS_STATUS", "60/min"),
        "payments_initiate": os.getenv("THROTTLE_PAYMENTS_INITIATE", "30/min"),
        "payments_callback": os.getenv("THROTTLE_PAYMENTS_CALLBACK", "120/min"),
        "payments_detail": os.getenv("THROTTLE_PAYMENTS_DETAIL", "240/min"),
    },
}

# --- Downstream services ---
USE_HTTP_ADAPTERS = env_bool("USE_HTTP_ADAPTERS", True)
CATALOG_BASE_URL = os.getenv("CATALOG_BASE_URL", "http://localhost:8001")
NOTIFICATIONS_BASE_URL = os.getenv("NOTIFICATIONS_BASE_URL", "http://localhost:8003")
NOTIFICATIONS_ASYNC = env_bool("NOTIFICATIONS_ASYNC", True)
NOTIFICATIONS_WORKERS = int(os.getenv("NOTIFICATIONS_WORKERS", "2"))
NOTIFICATIONS_TIMEOUT_SECS = float(os.getenv("NOTIFICATIONS_TIMEOUT_SECS", "3"))

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "2.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "2"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# --- Orders ---
ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "MN")

# --- Payments ---
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
PAYMENT_AMOUNT_TOLERANCE = Decimal(os.getenv("PAYMENT_AMOUNT_TOLERANCE", "0.01"))
PAYMENT_GATEWAY_TIMEOUT_SECS = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECS", "10"))
ESEWA_MERCHANT_CODE = os.getenv("ESEWA_MERCHANT_ID", "EPAYTEST")
ESEWA_PAYMENT_URL = os.getenv("ESEWA_PAYMENT_URL", "https://uat.esewa.com.np/epay/main")
ESEWA_VERIFY_URL = os.getenv("ESEWA_VERIFY_URL", "https://uat.esewa.com.np/epay/transrec")
KHALTI_SECRET_KEY = os.getenv("KHALTI_SECRET_KEY", "")
KHALTI_PAYMENT_URL = os.getenv("KHALTI_PAYMENT_URL", "https://khalti.com/api/v2/payment/initiate/")
KHALTI_VERIFY_URL = os.getenv("KHALTI_VERIFY_URL", "https://khalti.com/api/v2/payment/verify/")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_context": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(actor_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_context"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "WARNING"), "propagate": False},
        "apps": {"level": LOG_LEVEL},
    },
}
