"""
Tests for webhook reconciliation on both rails.

These tests cover:
- Card subscription upserts, deletions and failed invoices
- One-time card purchases from checkout.session.completed
- Crypto payment activation, one-time purchases and renewals
- Exactly-once processing of redelivered events
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from django.test import override_settings
from django.utils import timezone
from djstripe.signals import WEBHOOK_SIGNALS

from tollgate.billing import signing
from tollgate.billing.constants import PaymentIntentKind
from tollgate.billing.constants import PaymentIntentStatus
from tollgate.billing.constants import ReminderStatus
from tollgate.billing.constants import ReminderType
from tollgate.billing.constants import SubscriptionOrigin
from tollgate.billing.constants import SubscriptionStatus
from tollgate.billing.constants import UserSubscriptionStatus
from tollgate.billing.constants import WebhookReceiptStatus
from tollgate.billing.events import CheckoutCompleted
from tollgate.billing.events import InvoicePaymentFailed
from tollgate.billing.events import SubscriptionChanged
from tollgate.billing.events import SubscriptionDeleted
from tollgate.billing.exceptions import EventInProgress
from tollgate.billing.exceptions import NotFound
from tollgate.billing.exceptions import SignatureMismatch
from tollgate.billing.models import Purchase
from tollgate.billing.models import RenewalReminder
from tollgate.billing.models import Subscription
from tollgate.billing.models import WebhookEventReceipt
from tollgate.billing.reconciliation import claim_event
from tollgate.billing.reconciliation import reconcile_cryptomus_webhook
from tollgate.billing.reconciliation import reconcile_stripe_event
from tollgate.billing.tests.factories import CouponFactory
from tollgate.billing.tests.factories import PaymentIntentFactory
from tollgate.billing.tests.factories import ProductFactory
from tollgate.billing.tests.factories import RenewalReminderFactory
from tollgate.billing.tests.factories import SubscriptionFactory
from tollgate.users.tests.factories import UserFactory

API_KEY = "test-cryptomus-api-key"
MERCHANT_ID = "test-merchant-id"


def signed_webhook(**fields) -> dict:
    payload = {"merchant_id": MERCHANT_ID, **fields}
    payload["sign"] = signing.sign(payload, API_KEY)
    return payload


@pytest.fixture
def customer(db):
    return UserFactory(stripe_customer_id="cus_1")


@pytest.fixture
def plan(db):
    return ProductFactory(subscription=True, stripe_price_id="price_basic")


def _changed(event_id="evt_1", status="active", price_id="price_basic", **kwargs):
    now = timezone.now()
    defaults = {
        "subscription_id": "sub_1",
        "customer_id": "cus_1",
        "current_period_start": now,
        "current_period_end": now + timedelta(days=30),
    }
    defaults.update(kwargs)
    return SubscriptionChanged(event_id=event_id, status=status, price_id=price_id, **defaults)


@pytest.mark.django_db
class TestClaimEvent:
    def test_second_claim_of_completed_event_is_refused(self):
        receipt = claim_event("stripe", "evt_1")
        receipt.status = WebhookReceiptStatus.COMPLETED
        receipt.save()

        assert claim_event("stripe", "evt_1") is None

    def test_claim_held_by_another_worker_raises(self):
        assert claim_event("stripe", "evt_1") is not None

        with pytest.raises(EventInProgress):
            claim_event("stripe", "evt_1")

    def test_same_id_on_other_rail_is_independent(self):
        assert claim_event("stripe", "evt_1") is not None
        assert claim_event("cryptomus", "evt_1") is not None

    def test_failed_receipt_can_be_reclaimed(self):
        receipt = claim_event("stripe", "evt_1")
        receipt.status = WebhookReceiptStatus.FAILED
        receipt.save()

        reclaimed = claim_event("stripe", "evt_1")

        assert reclaimed is not None
        assert reclaimed.status == WebhookReceiptStatus.PROCESSING

    @override_settings(WEBHOOK_RECEIPT_STALE_SECONDS=300)
    def test_stale_processing_receipt_can_be_reclaimed(self):
        claim_event("stripe", "evt_1")
        WebhookEventReceipt.objects.filter(event_id="evt_1").update(
            modified=timezone.now() - timedelta(minutes=10),
        )

        reclaimed = claim_event("stripe", "evt_1")

        assert reclaimed is not None
        assert reclaimed.status == WebhookReceiptStatus.PROCESSING
        assert reclaimed.modified > timezone.now() - timedelta(minutes=1)


@pytest.mark.django_db
class TestStripeSubscriptionEvents:
    def test_created_inserts_subscription_and_mirrors_user(self, customer, plan):
        reconcile_stripe_event(_changed(cancel_at_period_end=False))

        subscription = Subscription.objects.get(provider_subscription_id="sub_1")
        assert subscription.user == customer
        assert subscription.product == plan
        assert subscription.origin == SubscriptionOrigin.STRIPE
        assert subscription.status == SubscriptionStatus.ACTIVE

        customer.refresh_from_db()
        assert customer.subscription_status == UserSubscriptionStatus.ACTIVE
        assert customer.current_product == plan

    def test_update_is_upsert_by_provider_id(self, customer, plan):
        reconcile_stripe_event(_changed("evt_1"))
        reconcile_stripe_event(_changed("evt_2", status="past_due", cancel_at_period_end=True))

        subscription = Subscription.objects.get(provider_subscription_id="sub_1")
        assert Subscription.objects.count() == 1
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.cancel_at_period_end is True

    def test_price_change_switches_product(self, customer, plan):
        pro = ProductFactory(subscription=True, stripe_price_id="price_pro")
        reconcile_stripe_event(_changed("evt_1"))

        reconcile_stripe_event(_changed("evt_2", price_id="price_pro"))

        assert Subscription.objects.get(provider_subscription_id="sub_1").product == pro
        customer.refresh_from_db()
        assert customer.current_product == pro

    def test_redelivered_event_is_applied_once(self, customer, plan):
        reconcile_stripe_event(_changed("evt_1", status="active"))
        Subscription.objects.update(status=SubscriptionStatus.UNPAID)

        reconcile_stripe_event(_changed("evt_1", status="active"))

        assert Subscription.objects.get().status == SubscriptionStatus.UNPAID

    def test_unknown_customer_is_dropped(self, plan):
        reconcile_stripe_event(_changed(customer_id="cus_unknown"))

        assert not Subscription.objects.exists()
        receipt = WebhookEventReceipt.objects.get(event_id="evt_1")
        assert receipt.status == WebhookReceiptStatus.COMPLETED

    def test_unknown_price_on_create_is_dropped(self, customer):
        reconcile_stripe_event(_changed(price_id="price_unknown"))

        assert not Subscription.objects.exists()

    def test_failure_marks_receipt_failed_and_allows_retry(self, customer, plan):
        with (
            patch(
                "tollgate.billing.reconciliation.apply_subscription_changed",
                side_effect=RuntimeError("db hiccup"),
            ),
            pytest.raises(RuntimeError),
        ):
            reconcile_stripe_event(_changed("evt_1"))

        assert WebhookEventReceipt.objects.get(event_id="evt_1").status == (
            WebhookReceiptStatus.FAILED
        )

        reconcile_stripe_event(_changed("evt_1"))

        assert Subscription.objects.filter(provider_subscription_id="sub_1").exists()

    def test_deleted_cancels_subscription_and_user(self, customer, plan):
        reconcile_stripe_event(_changed("evt_1"))

        reconcile_stripe_event(
            SubscriptionDeleted(event_id="evt_2", subscription_id="sub_1", customer_id="cus_1"),
        )

        subscription = Subscription.objects.get(provider_subscription_id="sub_1")
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.canceled_at is not None
        customer.refresh_from_db()
        assert customer.subscription_status == UserSubscriptionStatus.CANCELED
        assert customer.current_product is None

    def test_invoice_payment_failed_marks_user_past_due(self, customer):
        reconcile_stripe_event(InvoicePaymentFailed(event_id="evt_9", customer_id="cus_1"))

        customer.refresh_from_db()
        assert customer.subscription_status == UserSubscriptionStatus.PAST_DUE


@pytest.mark.django_db
class TestStripeCheckoutCompleted:
    def _completed(self, product, mode="payment", **metadata):
        return CheckoutCompleted(
            event_id="evt_cs",
            customer_id="cus_1",
            mode=mode,
            payment_reference="pi_1",
            amount_total=1599,
            currency="usd",
            metadata={"productId": str(product.id), "type": "one_time", **metadata},
        )

    def test_records_purchase_and_counts_coupon(self, customer):
        product = ProductFactory()
        coupon = CouponFactory(code="TWENTY")

        reconcile_stripe_event(self._completed(product, couponCode="TWENTY"))

        purchase = Purchase.objects.get(payment_reference="pi_1")
        assert purchase.user == customer
        assert purchase.amount == 1599
        coupon.refresh_from_db()
        assert coupon.current_uses == 1

    def test_subscription_mode_is_ignored(self, customer):
        product = ProductFactory(subscription=True)

        reconcile_stripe_event(self._completed(product, mode="subscription"))

        assert not Purchase.objects.exists()

    def test_missing_metadata_is_dropped(self, customer):
        event = CheckoutCompleted(
            event_id="evt_cs",
            customer_id="cus_1",
            mode="payment",
            payment_reference="pi_1",
        )

        reconcile_stripe_event(event)

        assert not Purchase.objects.exists()


@pytest.mark.django_db
class TestDjStripeReceivers:
    def test_signal_drives_reconciliation(self, customer, plan):
        event = SimpleNamespace(
            id="evt_sig",
            type="customer.subscription.created",
            data={
                "object": {
                    "id": "sub_sig",
                    "customer": "cus_1",
                    "status": "trialing",
                    "items": {"data": [{"price": {"id": "price_basic"}}]},
                },
            },
        )

        WEBHOOK_SIGNALS["customer.subscription.created"].send(sender=None, event=event)

        subscription = Subscription.objects.get(provider_subscription_id="sub_sig")
        assert subscription.status == SubscriptionStatus.TRIALING


@pytest.mark.django_db
class TestCryptomusWebhook:
    def test_prepaid_monthly_payment_activates_subscription(self, user):
        product = ProductFactory(subscription=True)
        intent = PaymentIntentFactory(
            user=user,
            product=product,
            uuid="abc",
            kind=PaymentIntentKind.PREPAID_SUBSCRIPTION,
        )

        reconcile_cryptomus_webhook(
            signed_webhook(
                uuid="abc",
                order_id=intent.order_id,
                payment_status="paid",
                payer_currency="USDT",
                payer_amount="19.99",
                network="tron",
            ),
        )

        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PAID
        assert intent.paid_at is not None
        assert intent.crypto_currency == "USDT"
        assert intent.network == "tron"

        subscription = Subscription.objects.get(user=user)
        assert subscription.provider_subscription_id == "cryptomus_abc"
        assert subscription.origin == SubscriptionOrigin.CRYPTOMUS
        assert subscription.status == SubscriptionStatus.ACTIVE
        period = subscription.current_period_end - subscription.current_period_start
        assert period == timedelta(days=30)

        reminder = RenewalReminder.objects.get(user=user)
        assert reminder.reminder_type == ReminderType.CRYPTOMUS_PREPAID_SUBSCRIPTION
        assert reminder.renewal_at == subscription.current_period_end
        assert reminder.reminder_at == subscription.current_period_end - timedelta(days=7)

        user.refresh_from_db()
        assert user.subscription_status == UserSubscriptionStatus.ACTIVE
        assert user.current_product == product

    def test_duplicate_paid_webhook_is_a_no_op(self, user):
        product = ProductFactory(subscription=True)
        coupon = CouponFactory(code="TWENTY")
        PaymentIntentFactory(
            user=user,
            product=product,
            uuid="abc",
            kind=PaymentIntentKind.PREPAID_SUBSCRIPTION,
            coupon_code="TWENTY",
        )
        payload = signed_webhook(uuid="abc", status="paid")

        reconcile_cryptomus_webhook(payload)
        reconcile_cryptomus_webhook(payload)

        assert Subscription.objects.count() == 1
        assert RenewalReminder.objects.count() == 1
        coupon.refresh_from_db()
        assert coupon.current_uses == 1

    def test_yearly_subscription_gets_no_reminder(self, user):
        product = ProductFactory(yearly=True)
        PaymentIntentFactory(
            user=user,
            product=product,
            uuid="abc",
            kind=PaymentIntentKind.SUBSCRIPTION,
        )

        reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="paid"))

        subscription = Subscription.objects.get(user=user)
        period = subscription.current_period_end - subscription.current_period_start
        assert period == timedelta(days=365)
        assert not RenewalReminder.objects.exists()

    def test_one_time_payment_records_purchase(self, user):
        product = ProductFactory(price=1999)
        PaymentIntentFactory(user=user, product=product, uuid="abc", amount=1999)

        reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="paid_over"))

        purchase = Purchase.objects.get(payment_reference="cryptomus_abc")
        assert purchase.amount == 1999
        assert not Subscription.objects.exists()

    def test_intermediate_status_only_updates_intent(self, user):
        intent = PaymentIntentFactory(user=user, uuid="abc")

        reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="process"))

        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PROCESS
        assert intent.paid_at is None
        assert not Purchase.objects.exists()

    def test_failed_then_paid_are_distinct_events(self, user):
        intent = PaymentIntentFactory(user=user, uuid="abc")

        reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="wrong_amount"))
        reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="paid"))

        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PAID
        assert Purchase.objects.filter(payment_reference="cryptomus_abc").exists()

    def test_late_intermediate_status_does_not_undo_paid(self, user):
        intent = PaymentIntentFactory(user=user, uuid="abc")

        reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="paid"))
        reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="process"))

        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PAID
        assert intent.paid_at is not None
        assert Purchase.objects.filter(payment_reference="cryptomus_abc").count() == 1

    def test_paid_event_stuck_in_processing_is_retried_later(self, user):
        product = ProductFactory(subscription=True)
        PaymentIntentFactory(
            user=user,
            product=product,
            uuid="abc",
            kind=PaymentIntentKind.PREPAID_SUBSCRIPTION,
        )
        WebhookEventReceipt.objects.create(
            rail="cryptomus",
            event_id="abc:paid",
            event_type="paid",
            status=WebhookReceiptStatus.PROCESSING,
        )
        webhook = signed_webhook(uuid="abc", status="paid")

        # A worker still inside its grace window keeps the claim.
        with pytest.raises(EventInProgress):
            reconcile_cryptomus_webhook(webhook)
        assert not Subscription.objects.exists()

        WebhookEventReceipt.objects.filter(event_id="abc:paid").update(
            modified=timezone.now() - timedelta(hours=1),
        )
        reconcile_cryptomus_webhook(webhook)

        subscription = Subscription.objects.get(user=user)
        assert subscription.status == SubscriptionStatus.ACTIVE
        receipt = WebhookEventReceipt.objects.get(event_id="abc:paid")
        assert receipt.status == WebhookReceiptStatus.COMPLETED

    def test_forged_signature_changes_nothing(self, user):
        intent = PaymentIntentFactory(user=user, uuid="abc")
        payload = signed_webhook(uuid="abc", status="fail")
        payload["status"] = "paid"

        with pytest.raises(SignatureMismatch):
            reconcile_cryptomus_webhook(payload)

        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PENDING
        assert not WebhookEventReceipt.objects.exists()

    def test_unknown_payment(self):
        with pytest.raises(NotFound):
            reconcile_cryptomus_webhook(signed_webhook(uuid="nope", status="paid"))

    def test_untracked_status_is_ignored(self, user):
        intent = PaymentIntentFactory(user=user, uuid="abc")

        result = reconcile_cryptomus_webhook(signed_webhook(uuid="abc", status="refund_process"))

        assert result is None
        intent.refresh_from_db()
        assert intent.status == PaymentIntentStatus.PENDING

    def test_renewal_payment_extends_subscription(self, user):
        product = ProductFactory(subscription=True)
        old_end = timezone.now() + timedelta(days=3)
        subscription = SubscriptionFactory(
            user=user,
            product=product,
            crypto=True,
            current_period_end=old_end,
        )
        stale = RenewalReminderFactory(user=user, product=product)
        PaymentIntentFactory(
            user=user,
            product=product,
            uuid="renew-1",
            kind=PaymentIntentKind.SUBSCRIPTION_RENEWAL,
            related_subscription=subscription,
        )

        reconcile_cryptomus_webhook(signed_webhook(uuid="renew-1", status="paid"))

        subscription.refresh_from_db()
        assert subscription.current_period_start == old_end
        assert subscription.current_period_end == old_end + timedelta(days=30)

        stale.refresh_from_db()
        assert stale.status == ReminderStatus.RENEWED

        upcoming = RenewalReminder.objects.get(status=ReminderStatus.PENDING)
        assert upcoming.renewal_at == subscription.current_period_end
        assert Subscription.objects.count() == 1
