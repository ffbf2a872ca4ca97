"""
Billing API views.

Every view translates BillingError subclasses into ``{"error": message}``
with the error's status code; anything unexpected is logged and answered
with a generic 500 so provider details never reach the browser.

The Stripe webhook is served by dj-stripe (see config/urls.py); the
Cryptomus webhook lives here because its signature scheme is ours to check.
"""

import logging

from django.conf import settings
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import APIView

from tollgate.billing.checkout import CheckoutRequest
from tollgate.billing.checkout import CheckoutService
from tollgate.billing.discounts import validate_coupon
from tollgate.billing.exceptions import BillingError
from tollgate.billing.exceptions import CheckoutValidationError
from tollgate.billing.exceptions import EventInProgress
from tollgate.billing.exceptions import NotFound
from tollgate.billing.exceptions import SignatureMismatch
from tollgate.billing.exceptions import Unauthenticated
from tollgate.billing.rails import get_rail
from tollgate.billing.reconciliation import reconcile_cryptomus_webhook
from tollgate.billing.renewals import get_expiring_subscriptions
from tollgate.billing.renewals import renew_prepaid_subscription
from tollgate.billing.subscriptions import cancel_subscription
from tollgate.billing.subscriptions import create_portal_session
from tollgate.billing.subscriptions import get_billing_overview
from tollgate.billing.subscriptions import reactivate_subscription
from tollgate.billing.subscriptions import serialize_subscription
from tollgate.billing.subscriptions import upgrade_subscription

logger = logging.getLogger(__name__)


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: int = Field(alias="subscriptionId")


class UpgradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_subscription_id: int = Field(alias="currentSubscriptionId")
    new_product_id: int = Field(alias="newProductId")


class CouponRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1)
    product_id: int | None = Field(default=None, alias="productId")


class BillingAPIView(APIView):
    """
    Base view for user-facing billing endpoints.

    Authentication is checked by the views themselves so an anonymous
    caller gets a 401 with the billing error shape.
    """

    permission_classes = []

    # Shown instead of unexpected internal errors
    failure_message = "Request failed"
    # Shown when the request body does not parse
    invalid_message = "Invalid request"

    def get_user(self, request):
        user = request.user
        if user is None or not user.is_authenticated:
            msg = "Authentication required"
            raise Unauthenticated(msg)
        return user

    def parse(self, model, request):
        try:
            return model.model_validate(request.data)
        except ValidationError as e:
            raise CheckoutValidationError(self.invalid_message) from e

    def handle_exception(self, exc):
        if isinstance(exc, BillingError):
            if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
                logger.error("%s: %s", self.__class__.__name__, exc.message)
                message = self.failure_message
            else:
                message = exc.message
            return Response({"error": message}, status=exc.status_code)
        if isinstance(exc, APIException):
            return super().handle_exception(exc)
        logger.exception("Unexpected error in %s", self.__class__.__name__)
        return Response(
            {"error": self.failure_message},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class CheckoutView(BillingAPIView):
    """
    Start a checkout on the given rail.

    URL: POST /api/v1/billing/checkout/<rail>/
    Body: {productId, priceType, couponCode?, successUrl?, cancelUrl?}
    """

    failure_message = "Failed to create checkout session"
    invalid_message = "Product ID and price type are required"

    def post(self, request, rail):
        user = self.get_user(request)
        checkout_request = self.parse(CheckoutRequest, request)
        service = CheckoutService(get_rail(rail))
        result = service.start(user, checkout_request)
        return Response(result.as_dict(), status=status.HTTP_200_OK)


class CouponValidateView(BillingAPIView):
    """URL: POST /api/v1/billing/coupons/validate/"""

    failure_message = "Failed to validate coupon"
    invalid_message = "Coupon code is required"

    def post(self, request):
        self.get_user(request)
        payload = self.parse(CouponRequest, request)
        result = validate_coupon(payload.code, payload.product_id)
        return Response(result.as_dict(), status=status.HTTP_200_OK)


class BillingOverviewView(BillingAPIView):
    """URL: GET /api/v1/billing/overview/"""

    def get(self, request):
        user = self.get_user(request)
        return Response(get_billing_overview(user), status=status.HTTP_200_OK)


class CustomerPortalView(BillingAPIView):
    """URL: POST /api/v1/billing/portal/"""

    failure_message = "Failed to create portal session"

    def post(self, request):
        user = self.get_user(request)
        return_url = request.data.get("returnUrl") or f"{settings.SITE_URL}/dash"
        url = create_portal_session(user, return_url)
        return Response({"url": url}, status=status.HTTP_200_OK)


class CancelSubscriptionView(BillingAPIView):
    """URL: POST /api/v1/billing/subscriptions/cancel/"""

    failure_message = "Failed to cancel subscription"
    invalid_message = "Subscription ID is required"

    def post(self, request):
        user = self.get_user(request)
        payload = self.parse(SubscriptionRequest, request)
        result = cancel_subscription(user, payload.subscription_id)
        return Response(result.as_dict(), status=status.HTTP_200_OK)


class ReactivateSubscriptionView(BillingAPIView):
    """URL: POST /api/v1/billing/subscriptions/reactivate/"""

    failure_message = "Failed to reactivate subscription"
    invalid_message = "Subscription ID is required"

    def post(self, request):
        user = self.get_user(request)
        payload = self.parse(SubscriptionRequest, request)
        result = reactivate_subscription(user, payload.subscription_id)
        return Response(result.as_dict(), status=status.HTTP_200_OK)


class UpgradeSubscriptionView(BillingAPIView):
    """URL: POST /api/v1/billing/subscriptions/upgrade/"""

    failure_message = "Failed to upgrade subscription"
    invalid_message = "Current subscription ID and new product ID are required"

    def post(self, request):
        user = self.get_user(request)
        payload = self.parse(UpgradeRequest, request)
        result = upgrade_subscription(
            user,
            payload.current_subscription_id,
            payload.new_product_id,
        )
        return Response(result.as_dict(), status=status.HTTP_200_OK)


class RenewSubscriptionView(BillingAPIView):
    """
    Create the crypto payment that renews a prepaid subscription.

    URL: POST /api/v1/billing/subscriptions/renew/
    """

    failure_message = "Failed to create renewal payment"
    invalid_message = "Subscription ID is required"

    def post(self, request):
        user = self.get_user(request)
        payload = self.parse(SubscriptionRequest, request)
        payment = renew_prepaid_subscription(payload.subscription_id, user)
        return Response(payment.as_dict(), status=status.HTTP_200_OK)


class ExpiringSubscriptionsView(BillingAPIView):
    """URL: GET /api/v1/billing/subscriptions/expiring/"""

    failure_message = "Failed to fetch expiring subscriptions"

    def get(self, request):
        user = self.get_user(request)
        subscriptions = [
            {
                "id": sub["id"],
                "product": sub["product"],
                "currentPeriodEnd": sub["currentPeriodEnd"],
                "status": sub["status"],
            }
            for sub in map(serialize_subscription, get_expiring_subscriptions(user))
        ]
        return Response({"subscriptions": subscriptions}, status=status.HTTP_200_OK)


class CryptomusWebhookView(APIView):
    """
    Payment notifications from the crypto gateway.

    Public endpoint: authenticity comes from the payload signature, which is
    verified before anything is touched.

    URL: POST /api/v1/billing/cryptomus/webhook/
    """

    authentication_classes = []
    permission_classes = []

    def post(self, request):
        payload = request.data
        if not isinstance(payload, dict):
            return Response(
                {"error": "Invalid payload"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            reconcile_cryptomus_webhook(dict(payload))
        except SignatureMismatch:
            return Response(
                {"error": "Invalid signature"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except NotFound:
            return Response(
                {"error": "Payment not found"},
                status=status.HTTP_404_NOT_FOUND,
            )
        except EventInProgress:
            return Response(
                {"error": "Payment update already in progress"},
                status=status.HTTP_409_CONFLICT,
            )
        except Exception:
            logger.exception("Cryptomus webhook handling failed for %s", payload.get("uuid"))
            return Response(
                {"error": "Internal server error"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return Response({"success": True}, status=status.HTTP_200_OK)
