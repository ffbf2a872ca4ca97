# ruff: noqa: E501
"""
Production settings.

Payment credentials have no defaults here: a deployment that forgets the
Stripe webhook secret or the Cryptomus key fails at startup instead of
silently rejecting every webhook.

Required environment variables:
    DJANGO_SECRET_KEY, DJANGO_ALLOWED_HOSTS, DJANGO_ADMIN_URL, DATABASE_URL
    SITE_URL: public origin, used for checkout return URLs and the crypto callback
    STRIPE_LIVE_SECRET_KEY, STRIPE_LIVE_PUBLIC_KEY, DJSTRIPE_WEBHOOK_SECRET
    CRYPTOMUS_API_KEY, CRYPTOMUS_MERCHANT_ID
    CELERY_BROKER_URL
    WORKER_API_KEY: shared key for the /api/v1/scheduled/ endpoints

Optional:
    SENTRY_DSN: error reporting (disabled when unset)
"""

import logging

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from .base import *  # noqa: F403
from .base import DATABASES
from .base import env

# GENERAL
# ------------------------------------------------------------------------------
SECRET_KEY = env("DJANGO_SECRET_KEY")
ALLOWED_HOSTS = env.list("DJANGO_ALLOWED_HOSTS")
ADMIN_URL = env("DJANGO_ADMIN_URL")
SITE_URL = env("SITE_URL")

# Webhook handlers and sweeps run short transactions of their own.
DATABASES["default"]["CONN_MAX_AGE"] = env.int("CONN_MAX_AGE", default=60)

# PAYMENTS
# ------------------------------------------------------------------------------
STRIPE_LIVE_MODE = env.bool("STRIPE_LIVE_MODE", default=True)
STRIPE_LIVE_SECRET_KEY = env("STRIPE_LIVE_SECRET_KEY")
STRIPE_LIVE_PUBLIC_KEY = env("STRIPE_LIVE_PUBLIC_KEY")
STRIPE_SECRET_KEY = STRIPE_LIVE_SECRET_KEY if STRIPE_LIVE_MODE else env("STRIPE_TEST_SECRET_KEY")
STRIPE_PUBLIC_KEY = STRIPE_LIVE_PUBLIC_KEY if STRIPE_LIVE_MODE else env("STRIPE_TEST_PUBLIC_KEY")
DJSTRIPE_WEBHOOK_SECRET = env("DJSTRIPE_WEBHOOK_SECRET")

CRYPTOMUS_API_KEY = env("CRYPTOMUS_API_KEY")
CRYPTOMUS_MERCHANT_ID = env("CRYPTOMUS_MERCHANT_ID")

# Shared key for /api/v1/scheduled/.
WORKER_API_KEY = env("WORKER_API_KEY")

# CELERY
# ------------------------------------------------------------------------------
CELERY_BROKER_URL = env("CELERY_BROKER_URL")
CELERY_TASK_ALWAYS_EAGER = False

# SECURITY
# ------------------------------------------------------------------------------
# TLS terminates at the load balancer; webhooks from both providers arrive over HTTPS.
SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
SECURE_SSL_REDIRECT = env.bool("DJANGO_SECURE_SSL_REDIRECT", default=True)
SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True
CSRF_TRUSTED_ORIGINS = env.list("DJANGO_CSRF_TRUSTED_ORIGINS", default=[SITE_URL])
SECURE_HSTS_SECONDS = env.int("DJANGO_SECURE_HSTS_SECONDS", default=60)
SECURE_HSTS_INCLUDE_SUBDOMAINS = env.bool(
    "DJANGO_SECURE_HSTS_INCLUDE_SUBDOMAINS",
    default=True,
)
SECURE_CONTENT_TYPE_NOSNIFF = True

# LOGGING
# ------------------------------------------------------------------------------
# Structured JSON on stdout. Gateway responses and webhook outcomes are logged
# at INFO by tollgate.billing and are the trail for manual reconciliation.
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "format": "%(asctime)s %(levelname)s %(name)s %(module)s %(funcName)s %(message)s",
            # Log aggregators expect "severity" instead of "levelname"
            "rename_fields": {"levelname": "severity"},
        },
    },
    "handlers": {
        "console": {
            "level": "DEBUG",
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
    },
    "root": {"level": "INFO", "handlers": ["console"]},
    "loggers": {
        "django.db.backends": {"level": "ERROR", "propagate": True},
        "django.security.DisallowedHost": {"level": "ERROR", "propagate": True},
        "sentry_sdk": {"level": "ERROR", "propagate": True},
        "stripe": {"level": "WARNING", "propagate": True},
        "djstripe": {"level": "WARNING", "propagate": True},
        "httpx": {"level": "WARNING", "propagate": True},
        "celery": {"level": "INFO", "propagate": True},
        "tollgate": {"level": "INFO", "propagate": True},
    },
}

# Sentry
# ------------------------------------------------------------------------------
SENTRY_DSN = env("SENTRY_DSN", default="")

if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            LoggingIntegration(
                level=env.int("DJANGO_SENTRY_LOG_LEVEL", logging.INFO),
                event_level=logging.ERROR,
            ),
            DjangoIntegration(),
            CeleryIntegration(),
        ],
        environment=env("SENTRY_ENVIRONMENT", default="production"),
        traces_sample_rate=env.float("SENTRY_TRACES_SAMPLE_RATE", default=0.0),
        # Card and customer details stay out of Sentry.
        send_default_pii=False,
    )
