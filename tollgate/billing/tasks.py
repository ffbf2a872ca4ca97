"""
Celery tasks for the billing sweeps.

Self-hosted deployments schedule these with Celery beat; each task wraps a
management command so the same work can be triggered by hand, by beat, or
over HTTP from an external scheduler (see tollgate/core/api/scheduled_tasks.py).

To run the worker:
    celery -A config worker --loglevel=info

To run the beat scheduler:
    celery -A config beat --loglevel=info
"""

import logging
from datetime import UTC
from datetime import datetime
from io import StringIO

from celery import shared_task
from django.core.management import call_command
from django.db import OperationalError

logger = logging.getLogger(__name__)

# Transient failures worth retrying.
RETRYABLE_EXCEPTIONS = (
    OperationalError,
    ConnectionError,
    TimeoutError,
    OSError,
)


def _run_management_command(command_name: str, *args: str) -> dict:
    """
    Run a management command and return its output.

    Exceptions propagate so Celery's autoretry_for can handle them.
    """
    out = StringIO()
    err = StringIO()
    call_command(command_name, *args, stdout=out, stderr=err)

    result = {
        "status": "completed",
        "command": command_name,
        "output": out.getvalue().strip(),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }
    errors = err.getvalue().strip()
    if errors:
        result["errors"] = errors
    return result


# Default schedules (see CELERY_BEAT_SCHEDULE in config/settings/base.py):
#   expire_subscriptions    - Hourly at :05
#   send_renewal_reminders  - Hourly at :15


@shared_task(
    bind=True,
    name="tollgate.expire_subscriptions",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def expire_subscriptions(self) -> dict:
    """Expire subscriptions whose current period has ended."""
    logger.info("Starting subscription expiry sweep (task_id=%s)", self.request.id)
    result = _run_management_command("expire_subscriptions")
    logger.info("Subscription expiry sweep completed: %s", result["output"])
    return result


@shared_task(
    bind=True,
    name="tollgate.send_renewal_reminders",
    autoretry_for=RETRYABLE_EXCEPTIONS,
    max_retries=3,
    retry_backoff=60,
    retry_backoff_max=600,
    acks_late=True,
)
def send_renewal_reminders(self) -> dict:
    """Dispatch renewal reminders that have come due."""
    logger.info("Starting renewal reminder sweep (task_id=%s)", self.request.id)
    result = _run_management_command("send_renewal_reminders")
    logger.info("Renewal reminder sweep completed: %s", result["output"])
    return result
