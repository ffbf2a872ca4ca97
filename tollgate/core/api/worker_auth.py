"""
Shared-secret authentication for the scheduled-task endpoints.

An external scheduler (cron, Cloud Scheduler, a CI job) triggers the billing
sweeps over HTTP. Those endpoints are protected by a shared API key
(WORKER_API_KEY) sent as::

    Authorization: Worker-Key <key>

Outside DEBUG the endpoints fail closed: with WORKER_API_KEY unset every
request is rejected. Local development (DEBUG on) may leave the key unset
and call the endpoints directly.
"""

import logging

from django.conf import settings
from django.utils.crypto import constant_time_compare
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = logging.getLogger(__name__)

WORKER_KEY_HEADER_KEYWORD = "Worker-Key"


class WorkerKeyAuthentication(BaseAuthentication):
    """
    Check the Authorization header against WORKER_API_KEY.

    Returns ``(None, "worker-key")`` when the key matches and None when no
    key is configured under DEBUG. Raises AuthenticationFailed otherwise.
    """

    def authenticate(self, request):
        configured_key = getattr(settings, "WORKER_API_KEY", "")
        if not configured_key:
            if settings.DEBUG:
                return None
            logger.error("Scheduled endpoint called but WORKER_API_KEY is not configured")
            raise AuthenticationFailed("Worker API key is not configured.")

        auth_header = request.META.get("HTTP_AUTHORIZATION", "")
        if not auth_header:
            logger.warning(
                "Scheduled endpoint called without Authorization header "
                "(WORKER_API_KEY is configured)",
            )
            raise AuthenticationFailed("Worker API key required.")

        parts = auth_header.split(" ", 1)
        expected_parts = 2
        if len(parts) != expected_parts or parts[0] != WORKER_KEY_HEADER_KEYWORD:
            raise AuthenticationFailed(
                "Invalid authorization header. Expected: "
                "Authorization: Worker-Key <key>",
            )

        if not constant_time_compare(parts[1], configured_key):
            logger.warning("Scheduled endpoint called with invalid API key")
            raise AuthenticationFailed("Invalid worker API key.")

        return (None, "worker-key")

    def authenticate_header(self, request):
        return WORKER_KEY_HEADER_KEYWORD
