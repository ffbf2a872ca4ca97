"""
Tests for the billing API endpoints.

These tests cover:
- The {"error": message} shape for unauthenticated and invalid requests
- Checkout, coupon validation and subscription management routes
- The public Cryptomus webhook endpoint and its status codes
"""

from unittest.mock import patch

import pytest
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from tollgate.billing import signing
from tollgate.billing.constants import PaymentIntentStatus
from tollgate.billing.constants import PaymentRailName
from tollgate.billing.constants import WebhookReceiptStatus
from tollgate.billing.exceptions import ProviderError
from tollgate.billing.models import WebhookEventReceipt
from tollgate.billing.tests.factories import CouponFactory
from tollgate.billing.tests.factories import PaymentIntentFactory
from tollgate.billing.tests.factories import ProductFactory
from tollgate.billing.tests.factories import SubscriptionFactory
from tollgate.billing.tests.test_checkout import FakeRail


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def auth_client(api_client, user):
    api_client.force_authenticate(user=user)
    return api_client


@pytest.mark.django_db
class TestAuthentication:
    @pytest.mark.parametrize(
        ("name", "kwargs"),
        [
            ("billing:checkout", {"rail": "stripe"}),
            ("billing:coupon-validate", {}),
            ("billing:subscription-cancel", {}),
            ("billing:portal", {}),
        ],
    )
    def test_anonymous_post_gets_401(self, api_client, name, kwargs):
        response = api_client.post(reverse(name, kwargs=kwargs), {}, format="json")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json() == {"error": "Authentication required"}

    def test_anonymous_overview_gets_401(self, api_client):
        response = api_client.get(reverse("billing:overview"))

        assert response.status_code == status.HTTP_401_UNAUTHORIZED


@pytest.mark.django_db
class TestCheckoutView:
    def test_missing_fields(self, auth_client):
        response = auth_client.post(
            reverse("billing:checkout", kwargs={"rail": "stripe"}),
            {"productId": 1},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Product ID and price type are required"}

    def test_unknown_rail(self, auth_client):
        product = ProductFactory()

        response = auth_client.post(
            reverse("billing:checkout", kwargs={"rail": "paypal"}),
            {"productId": product.pk, "priceType": "one_time"},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Unknown payment rail: paypal"}

    def test_card_checkout_returns_session(self, auth_client):
        product = ProductFactory()

        with patch(
            "tollgate.billing.views.get_rail",
            return_value=FakeRail(PaymentRailName.STRIPE),
        ):
            response = auth_client.post(
                reverse("billing:checkout", kwargs={"rail": "stripe"}),
                {"productId": product.pk, "priceType": "one_time"},
                format="json",
            )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "url": "https://checkout.stripe.com/c/pay/cs_test_1",
            "sessionId": "cs_test_1",
        }

    def test_crypto_monthly_checkout_is_prepaid(self, auth_client):
        product = ProductFactory(subscription=True)

        with patch(
            "tollgate.billing.views.get_rail",
            return_value=FakeRail(PaymentRailName.CRYPTOMUS),
        ):
            response = auth_client.post(
                reverse("billing:checkout", kwargs={"rail": "cryptomus"}),
                {"productId": product.pk, "priceType": "subscription"},
                format="json",
            )

        body = response.json()
        assert response.status_code == status.HTTP_200_OK
        assert body["paymentId"] == "uuid-1"
        assert body["isPrepaid"] is True
        assert body["orderId"].startswith(f"prepaid_sub_{product.pk}_")

    def test_invalid_coupon_message(self, auth_client):
        product = ProductFactory()

        response = auth_client.post(
            reverse("billing:checkout", kwargs={"rail": "stripe"}),
            {"productId": product.pk, "priceType": "one_time", "couponCode": "NOPE"},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Coupon code not found or inactive"}

    def test_provider_errors_are_masked(self, auth_client):
        product = ProductFactory()
        rail = FakeRail(PaymentRailName.STRIPE)

        with (
            patch("tollgate.billing.views.get_rail", return_value=rail),
            patch.object(rail, "create_checkout", side_effect=ProviderError("sk_live leaked")),
        ):
            response = auth_client.post(
                reverse("billing:checkout", kwargs={"rail": "stripe"}),
                {"productId": product.pk, "priceType": "one_time"},
                format="json",
            )

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"error": "Failed to create checkout session"}


@pytest.mark.django_db
class TestCouponValidateView:
    def test_valid_coupon(self, auth_client):
        CouponFactory(code="TWENTY")

        response = auth_client.post(
            reverse("billing:coupon-validate"),
            {"code": "twenty"},
            format="json",
        )

        body = response.json()
        assert response.status_code == status.HTTP_200_OK
        assert body["valid"] is True
        assert body["coupon"]["code"] == "TWENTY"
        assert body["discount"]["displayText"] == "20% off"

    def test_invalid_coupon_is_still_200(self, auth_client):
        response = auth_client.post(
            reverse("billing:coupon-validate"),
            {"code": "NOPE"},
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"valid": False, "error": "Coupon code not found or inactive"}

    def test_missing_code(self, auth_client):
        response = auth_client.post(reverse("billing:coupon-validate"), {}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Coupon code is required"}


@pytest.mark.django_db
class TestSubscriptionViews:
    def test_cancel_crypto_subscription(self, auth_client, user):
        subscription = SubscriptionFactory(user=user, crypto=True)

        response = auth_client.post(
            reverse("billing:subscription-cancel"),
            {"subscriptionId": subscription.pk},
            format="json",
        )

        body = response.json()
        assert response.status_code == status.HTTP_200_OK
        assert body["success"] is True
        assert body["subscription"]["cancelAtPeriodEnd"] is True

    def test_cancel_unknown_subscription(self, auth_client):
        response = auth_client.post(
            reverse("billing:subscription-cancel"),
            {"subscriptionId": 999999},
            format="json",
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"error": "Subscription not found"}

    def test_upgrade_requires_both_ids(self, auth_client):
        response = auth_client.post(
            reverse("billing:subscription-upgrade"),
            {"currentSubscriptionId": 1},
            format="json",
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {
            "error": "Current subscription ID and new product ID are required",
        }

    def test_overview(self, auth_client):
        ProductFactory(subscription=True)

        response = auth_client.get(reverse("billing:overview"))

        body = response.json()
        assert response.status_code == status.HTTP_200_OK
        assert len(body["plans"]) == 1
        assert body["currentSubscription"] is None

    def test_expiring(self, auth_client, user):
        SubscriptionFactory(user=user, crypto=True)

        response = auth_client.get(reverse("billing:subscriptions-expiring"))

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"subscriptions": []}


@pytest.mark.django_db
class TestCryptomusWebhookView:
    url = "/api/v1/billing/cryptomus/webhook/"

    def _signed(self, **fields):
        payload = {"merchant_id": "test-merchant-id", **fields}
        payload["sign"] = signing.sign(payload, "test-cryptomus-api-key")
        return payload

    def test_paid_webhook(self, api_client, user):
        intent = PaymentIntentFactory(user=user, uuid="abc")

        response = api_client.post(
            self.url,
            self._signed(uuid="abc", order_id=intent.order_id, status="paid"),
            format="json",
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"success": True}
        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PAID

    def test_bad_signature(self, api_client, user):
        PaymentIntentFactory(user=user, uuid="abc")
        payload = self._signed(uuid="abc", status="paid")
        payload["sign"] = "0" * 32

        response = api_client.post(self.url, payload, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Invalid signature"}

    def test_unknown_payment(self, api_client):
        response = api_client.post(
            self.url,
            self._signed(uuid="missing", status="paid"),
            format="json",
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"error": "Payment not found"}

    def test_non_object_body(self, api_client):
        response = api_client.post(self.url, ["not", "an", "object"], format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_unexpected_failure_is_500(self, api_client, user):
        PaymentIntentFactory(user=user, uuid="abc")

        with patch(
            "tollgate.billing.reconciliation.apply_crypto_payment_update",
            side_effect=RuntimeError("boom"),
        ):
            response = api_client.post(
                self.url,
                self._signed(uuid="abc", status="paid"),
                format="json",
            )

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"error": "Internal server error"}

    def test_event_held_by_another_worker_asks_for_retry(self, api_client, user):
        intent = PaymentIntentFactory(user=user, uuid="abc")
        WebhookEventReceipt.objects.create(
            rail=PaymentRailName.CRYPTOMUS,
            event_id="abc:paid",
            event_type="paid",
            status=WebhookReceiptStatus.PROCESSING,
        )

        response = api_client.post(
            self.url,
            self._signed(uuid="abc", status="paid"),
            format="json",
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json() == {"error": "Payment update already in progress"}
        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PENDING
