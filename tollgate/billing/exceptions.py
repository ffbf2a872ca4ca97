"""
Billing error taxonomy.

Every error carries the HTTP status the API layer should answer with, so
views can translate any BillingError into ``{"error": message}`` without
knowing where it was raised.
"""

from rest_framework import status


class BillingError(Exception):
    """Base class for billing errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "billing_error"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class CheckoutValidationError(BillingError):
    """The checkout request itself is invalid (bad coupon, wrong kind...)."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_request"


class Unauthenticated(BillingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"


class NotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ProviderMisconfigured(BillingError):
    """The requested rail or operation is not available for this object."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "provider_misconfigured"


class ProviderError(BillingError):
    """The payment provider rejected a call or could not be reached."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "provider_error"


class SignatureMismatch(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"

    def __init__(self, message: str = "Invalid signature", **kwargs):
        super().__init__(message, **kwargs)


class EventInProgress(BillingError):
    """Another worker holds this webhook event; the provider should retry later."""

    status_code = status.HTTP_409_CONFLICT
    code = "event_in_progress"
