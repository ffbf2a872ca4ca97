"""
Tests for the Stripe card rail.

All Stripe API calls are patched; nothing here talks to the network.
"""

from datetime import UTC
from datetime import datetime
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest
import stripe
from django.test import TestCase
from django.test import override_settings

from tollgate.billing.events import CheckoutCompleted
from tollgate.billing.events import InvoicePaymentFailed
from tollgate.billing.events import SubscriptionChanged
from tollgate.billing.events import SubscriptionDeleted
from tollgate.billing.exceptions import ProviderError
from tollgate.billing.exceptions import ProviderMisconfigured
from tollgate.billing.rails.base import PricedCheckout
from tollgate.billing.rails.card import StripeRail
from tollgate.billing.rails.card import normalize_stripe_event
from tollgate.billing.tests.factories import CouponFactory
from tollgate.billing.tests.factories import ProductFactory
from tollgate.users.tests.factories import UserFactory


@override_settings(STRIPE_SECRET_KEY="sk_test_dummy")
class StripeRailTests(TestCase):
    def setUp(self):
        self.rail = StripeRail()
        self.user = UserFactory(email="buyer@example.com")

    @override_settings(STRIPE_SECRET_KEY="")
    def test_requires_secret_key(self):
        with self.assertRaises(ProviderMisconfigured):
            StripeRail()

    @patch("tollgate.billing.rails.card.stripe.Customer.create")
    def test_get_or_create_customer_creates_once(self, mock_create):
        mock_create.return_value = MagicMock(id="cus_123")

        first = self.rail.get_or_create_customer(self.user)
        second = self.rail.get_or_create_customer(self.user)

        self.assertEqual(first, "cus_123")
        self.assertEqual(second, "cus_123")
        mock_create.assert_called_once()
        self.user.refresh_from_db()
        self.assertEqual(self.user.stripe_customer_id, "cus_123")

    @patch("tollgate.billing.rails.card.stripe.Customer.create")
    def test_customer_error_is_wrapped(self, mock_create):
        mock_create.side_effect = stripe.APIConnectionError("network down")

        with self.assertRaises(ProviderError):
            self.rail.get_or_create_customer(self.user)

    @patch("tollgate.billing.rails.card.stripe.Price.retrieve")
    @patch("tollgate.billing.rails.card.stripe.Product.retrieve")
    def test_ensure_product_price_reuses_live_ids(self, mock_product, mock_price):
        product = ProductFactory(stripe_product_id="prod_1", stripe_price_id="price_1")
        mock_price.return_value = MagicMock(active=True)

        ids = self.rail.ensure_product_price(product)

        self.assertEqual(ids, ("prod_1", "price_1"))
        mock_product.assert_called_once_with("prod_1")

    @patch("tollgate.billing.rails.card.stripe.Price.create")
    @patch("tollgate.billing.rails.card.stripe.Product.create")
    @patch("tollgate.billing.rails.card.stripe.Product.retrieve")
    def test_ensure_product_price_recreates_missing_ids(
        self,
        mock_retrieve,
        mock_product_create,
        mock_price_create,
    ):
        product = ProductFactory(
            subscription=True,
            price=2900,
            stripe_product_id="prod_gone",
            stripe_price_id="price_gone",
        )
        mock_retrieve.side_effect = stripe.InvalidRequestError("No such product", None)
        mock_product_create.return_value = MagicMock(id="prod_new")
        mock_price_create.return_value = MagicMock(id="price_new")

        ids = self.rail.ensure_product_price(product)

        self.assertEqual(ids, ("prod_new", "price_new"))
        mock_price_create.assert_called_once_with(
            product="prod_new",
            unit_amount=2900,
            currency="usd",
            recurring={"interval": "month"},
        )
        product.refresh_from_db()
        self.assertEqual(product.stripe_price_id, "price_new")

    @patch("tollgate.billing.rails.card.stripe.Price.create")
    @patch("tollgate.billing.rails.card.stripe.Product.create")
    @patch("tollgate.billing.rails.card.stripe.Price.retrieve")
    @patch("tollgate.billing.rails.card.stripe.Product.retrieve")
    def test_ensure_product_price_replaces_inactive_price(
        self,
        mock_product_retrieve,
        mock_price_retrieve,
        mock_product_create,
        mock_price_create,
    ):
        product = ProductFactory(stripe_product_id="prod_1", stripe_price_id="price_old")
        mock_price_retrieve.return_value = MagicMock(active=False)
        mock_product_create.return_value = MagicMock(id="prod_2")
        mock_price_create.return_value = MagicMock(id="price_2")

        _, price_id = self.rail.ensure_product_price(product)

        self.assertEqual(price_id, "price_2")
        self.assertNotIn("recurring", mock_price_create.call_args.kwargs)

    @patch("tollgate.billing.rails.card.stripe.Coupon.create")
    def test_ensure_coupon_fixed_amount(self, mock_create):
        coupon = CouponFactory(code="FIVE", fixed=True)
        mock_create.return_value = MagicMock(id="co_1")

        coupon_id = self.rail.ensure_coupon(coupon, "usd")

        self.assertEqual(coupon_id, "co_1")
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs["amount_off"], 500)
        self.assertEqual(kwargs["currency"], "usd")
        self.assertEqual(kwargs["duration"], "once")
        coupon.refresh_from_db()
        self.assertEqual(coupon.stripe_coupon_id, "co_1")

    @patch("tollgate.billing.rails.card.stripe.checkout.Session.create")
    @patch("tollgate.billing.rails.card.stripe.Coupon.create")
    @patch.object(StripeRail, "ensure_product_price", return_value=("prod_1", "price_1"))
    def test_create_checkout_subscription_with_coupon(
        self,
        mock_ensure,
        mock_coupon_create,
        mock_session_create,
    ):
        self.user.stripe_customer_id = "cus_existing"
        self.user.save()
        product = ProductFactory(subscription=True)
        coupon = CouponFactory(code="TWENTY")
        mock_coupon_create.return_value = MagicMock(id="co_twenty")
        mock_session_create.return_value = MagicMock(
            id="cs_1",
            url="https://checkout.stripe.com/c/pay/cs_1",
        )

        result = self.rail.create_checkout(
            PricedCheckout(
                user=self.user,
                product=product,
                price_type="subscription",
                amount=2320,
                success_url="https://tollgate.test/ok",
                cancel_url="https://tollgate.test/no",
                coupon=coupon,
            ),
        )

        self.assertEqual(result.session_id, "cs_1")
        params = mock_session_create.call_args.kwargs
        self.assertEqual(params["customer"], "cus_existing")
        self.assertEqual(params["mode"], "subscription")
        self.assertEqual(params["line_items"], [{"price": "price_1", "quantity": 1}])
        self.assertEqual(params["discounts"], [{"coupon": "co_twenty"}])
        self.assertNotIn("allow_promotion_codes", params)
        self.assertEqual(params["billing_address_collection"], "required")
        self.assertEqual(params["metadata"]["couponCode"], "TWENTY")
        self.assertEqual(params["subscription_data"]["metadata"]["productId"], str(product.id))

    @patch("tollgate.billing.rails.card.stripe.checkout.Session.create")
    def test_checkout_session_without_coupon_allows_promotion_codes(self, mock_create):
        mock_create.return_value = MagicMock(id="cs_2", url="https://checkout.stripe.com/2")

        self.rail.create_checkout_session(
            customer_id="cus_1",
            price_id="price_1",
            mode="payment",
            metadata={"productId": "1", "type": "one_time"},
            success_url="https://tollgate.test/ok",
            cancel_url="https://tollgate.test/no",
        )

        params = mock_create.call_args.kwargs
        self.assertTrue(params["allow_promotion_codes"])
        self.assertNotIn("subscription_data", params)

    @patch("tollgate.billing.rails.card.stripe.Subscription.modify")
    @patch("tollgate.billing.rails.card.stripe.Subscription.retrieve")
    def test_change_subscription_item(self, mock_retrieve, mock_modify):
        mock_retrieve.return_value = {"items": {"data": [{"id": "si_1"}]}}

        self.rail.change_subscription_item("sub_1", "price_new")

        mock_modify.assert_called_once_with(
            "sub_1",
            items=[{"id": "si_1", "price": "price_new"}],
            proration_behavior="create_prorations",
        )

    @patch("tollgate.billing.rails.card.stripe.Subscription.modify")
    def test_modify_error_is_wrapped(self, mock_modify):
        mock_modify.side_effect = stripe.InvalidRequestError("No such subscription", None)

        with self.assertRaises(ProviderError):
            self.rail.cancel_at_period_end("sub_missing")

    @override_settings(DJSTRIPE_WEBHOOK_SECRET="whsec_test")
    @patch("tollgate.billing.rails.card.stripe.WebhookSignature.verify_header")
    def test_verify_webhook(self, mock_verify):
        self.assertTrue(self.rail.verify_webhook(b"{}", "t=1,v1=abc"))

        mock_verify.side_effect = stripe.SignatureVerificationError("bad", "t=1,v1=abc")
        self.assertFalse(self.rail.verify_webhook(b"{}", "t=1,v1=abc"))
        self.assertFalse(self.rail.verify_webhook(b"{}", None))


class TestNormalizeStripeEvent:
    def test_subscription_updated(self):
        event = normalize_stripe_event(
            {
                "id": "evt_1",
                "type": "customer.subscription.updated",
                "data": {
                    "object": {
                        "id": "sub_1",
                        "customer": "cus_1",
                        "status": "active",
                        "cancel_at_period_end": True,
                        "current_period_start": 1_700_000_000,
                        "current_period_end": 1_702_592_000,
                        "items": {"data": [{"price": {"id": "price_1"}}]},
                    },
                },
            },
        )

        assert isinstance(event, SubscriptionChanged)
        assert event.subscription_id == "sub_1"
        assert event.price_id == "price_1"
        assert event.cancel_at_period_end is True
        assert event.current_period_end == datetime.fromtimestamp(1_702_592_000, tz=UTC)
        assert event.created is False

    def test_period_falls_back_to_items(self):
        event = normalize_stripe_event(
            {
                "id": "evt_2",
                "type": "customer.subscription.created",
                "data": {
                    "object": {
                        "id": "sub_1",
                        "customer": "cus_1",
                        "status": "active",
                        "items": {
                            "data": [
                                {
                                    "price": {"id": "price_1"},
                                    "current_period_start": 1_700_000_000,
                                    "current_period_end": 1_702_592_000,
                                },
                            ],
                        },
                    },
                },
            },
        )

        assert event.created is True
        assert event.current_period_start == datetime.fromtimestamp(1_700_000_000, tz=UTC)

    def test_subscription_deleted(self):
        event = normalize_stripe_event(
            {
                "id": "evt_3",
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_1", "customer": "cus_1"}},
            },
        )

        assert event == SubscriptionDeleted(
            event_id="evt_3",
            subscription_id="sub_1",
            customer_id="cus_1",
        )

    def test_invoice_payment_failed(self):
        event = normalize_stripe_event(
            {
                "id": "evt_4",
                "type": "invoice.payment_failed",
                "data": {"object": {"customer": "cus_1", "subscription": "sub_1"}},
            },
        )

        assert isinstance(event, InvoicePaymentFailed)
        assert event.customer_id == "cus_1"

    def test_checkout_completed_uses_payment_intent_reference(self):
        event = normalize_stripe_event(
            {
                "id": "evt_5",
                "type": "checkout.session.completed",
                "data": {
                    "object": {
                        "id": "cs_1",
                        "customer": "cus_1",
                        "mode": "payment",
                        "payment_intent": "pi_1",
                        "amount_total": 1999,
                        "currency": "usd",
                        "metadata": {"productId": "3", "type": "one_time"},
                    },
                },
            },
        )

        assert isinstance(event, CheckoutCompleted)
        assert event.payment_reference == "pi_1"
        assert event.metadata["productId"] == "3"

    def test_unknown_event_type_is_ignored(self):
        assert normalize_stripe_event({"id": "evt_6", "type": "charge.refunded"}) is None


@pytest.mark.parametrize("name", ["stripe", "cryptomus"])
def test_get_rail_known_names(name):
    from tollgate.billing.rails import get_rail

    assert get_rail(name).name == name


def test_get_rail_unknown_name():
    from tollgate.billing.rails import get_rail

    with pytest.raises(ProviderMisconfigured):
        get_rail("paypal")
