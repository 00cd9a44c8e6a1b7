from pathlib import Path
import os

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent
load_dotenv(BASE_DIR / ".env")


def _env_bool(name, default=False):
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes")


def _env_int(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "change-me")
DEBUG = _env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "payments",
    "donations",
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

ROOT_URLCONF = "kapcdam.urls"
WSGI_APPLICATION = "kapcdam.wsgi.application"

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

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
    }
}

CACHES = {
    "default": {
        "BACKEND": os.getenv("CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": os.getenv("CACHE_LOCATION", "kapcdam"),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Kampala"
USE_I18N = True
USE_TZ = True
STATIC_URL = "/static/"

# ---------- Email ----------
EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = _env_int("EMAIL_PORT", 25)
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
EMAIL_USE_TLS = _env_bool("EMAIL_USE_TLS")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "noreply@kapcdam.org")
EMAIL_FAIL_SILENTLY = _env_bool("EMAIL_FAIL_SILENTLY", True)
PAYMENTS_ADMIN_EMAILS = os.getenv("PAYMENTS_ADMIN_EMAILS", "")

# ---------- Pesapal ----------
PESAPAL_API_URL = os.getenv("PESAPAL_API_URL", "https://cybqa.pesapal.com/pesapalv3/api")
PESAPAL_CONSUMER_KEY = os.getenv("PESAPAL_CONSUMER_KEY", "")
PESAPAL_CONSUMER_SECRET = os.getenv("PESAPAL_CONSUMER_SECRET", "")
PESAPAL_IPN_ID = os.getenv("PESAPAL_IPN_ID", "")
PESAPAL_TIMEOUT = _env_float("PESAPAL_TIMEOUT", 30.0)
PESAPAL_STATUS_RETRIES = _env_int("PESAPAL_STATUS_RETRIES", 3)
PESAPAL_RETRY_BACKOFF = _env_float("PESAPAL_RETRY_BACKOFF", 0.5)
PESAPAL_WEBHOOK_USER_AGENT = os.getenv("PESAPAL_WEBHOOK_USER_AGENT", "pesapal")
PESAPAL_REFUND_USERNAME = os.getenv("PESAPAL_REFUND_USERNAME", "admin")

# ---------- Webhook ingress ----------
PAYMENTS_WEBHOOK_RATE_LIMIT = _env_int("PAYMENTS_WEBHOOK_RATE_LIMIT", 50)
PAYMENTS_WEBHOOK_RATE_WINDOW = _env_int("PAYMENTS_WEBHOOK_RATE_WINDOW", 60)
PAYMENTS_WEBHOOK_RATE_LIMITER = os.getenv("PAYMENTS_WEBHOOK_RATE_LIMITER", "memory")
PAYMENTS_WEBHOOK_TIMEOUT = _env_float("PAYMENTS_WEBHOOK_TIMEOUT", 25.0)
PAYMENTS_TRUST_X_FORWARDED_FOR = _env_bool("PAYMENTS_TRUST_X_FORWARDED_FOR")

# ---------- Checkout ----------
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
DONATION_STATUS_URL = os.getenv("DONATION_STATUS_URL", "/donate/status/{reference}")
ORDER_STATUS_URL = os.getenv("ORDER_STATUS_URL", "/checkout/{reference}")
DONATION_CURRENCY = os.getenv("DONATION_CURRENCY", "USD")
ORDER_CURRENCY = os.getenv("ORDER_CURRENCY", "UGX")
PESAPAL_COUNTRY_CODE = os.getenv("PESAPAL_COUNTRY_CODE", "UG")

# ---------- Logging ----------
PAYMENTS_LOG_LEVEL = os.getenv("PAYMENTS_LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "payments": {"handlers": ["console"], "level": PAYMENTS_LOG_LEVEL, "propagate": False},
        "donations": {"handlers": ["console"], "level": PAYMENTS_LOG_LEVEL, "propagate": False},
        "orders": {"handlers": ["console"], "level": PAYMENTS_LOG_LEVEL, "propagate": False},
    },
}
