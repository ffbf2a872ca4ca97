"""
Celery application configuration for Tollgate.

Celery runs the two billing sweeps on a schedule (see CELERY_BEAT_SCHEDULE
in config/settings/base.py). Tasks are defined with @shared_task so they
also run under CELERY_TASK_ALWAYS_EAGER in tests.

Usage:
    # Run worker
    celery -A config worker --loglevel=info

    # Run beat scheduler
    celery -A config beat --loglevel=info
"""

import logging
import os

from celery import Celery

logger = logging.getLogger(__name__)

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")

app = Celery("tollgate")

# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()
