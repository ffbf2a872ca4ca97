"""
HTTP endpoints for the billing sweeps.

These wrap the same management commands the Celery beat tasks run, for
deployments that use an external scheduler instead of beat.

Example cron entry::

    5 * * * * curl -X POST -H "Authorization: Worker-Key $WORKER_API_KEY" \
        https://tollgate.example.com/api/v1/scheduled/expire-subscriptions/
"""

import logging
from io import StringIO

from django.core.management import call_command
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from tollgate.core.api.worker_auth import WorkerKeyAuthentication

logger = logging.getLogger(__name__)


class ScheduledTaskBaseView(APIView):
    """
    Run ``command_name`` and report its output.

    Subclasses only set the command; a failure is logged and reported with
    a 500 so the scheduler records the run as failed.
    """

    authentication_classes = [WorkerKeyAuthentication]
    permission_classes = []

    command_name = ""

    def post(self, request):
        logger.info("Starting scheduled %s", self.command_name)

        try:
            out = StringIO()
            call_command(self.command_name, stdout=out)
            output = out.getvalue().strip()

            logger.info("Scheduled %s completed: %s", self.command_name, output)

            return Response(
                {
                    "task": self.command_name,
                    "status": "completed",
                    "output": output,
                },
                status=status.HTTP_200_OK,
            )
        except Exception as e:
            logger.exception("Scheduled %s failed", self.command_name)
            return Response(
                {
                    "task": self.command_name,
                    "status": "failed",
                    "error": str(e),
                },
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )


class ExpireSubscriptionsView(ScheduledTaskBaseView):
    """
    URL: POST /api/v1/scheduled/expire-subscriptions/
    Recommended schedule: Hourly
    """

    command_name = "expire_subscriptions"


class SendRenewalRemindersView(ScheduledTaskBaseView):
    """
    URL: POST /api/v1/scheduled/send-renewal-reminders/
    Recommended schedule: Hourly
    """

    command_name = "send_renewal_reminders"
