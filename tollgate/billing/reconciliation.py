"""
Webhook reconciliation: apply verified provider events to the ledger.

Both rails follow the same contract:

- Nothing is mutated before the event is verified (dj-stripe verifies card
  events; reconcile_cryptomus_webhook verifies crypto ones itself)
- Each event is claimed in WebhookEventReceipt first, so a redelivery of an
  event that was already applied is a no-op
- Ledger writes for one event happen in a single transaction; coupon usage
  and renewal reminders are best-effort and run after it commits

Card events that reference something we do not know (customer, product,
checkout metadata) are logged and dropped rather than raised, so the
processor does not retry them forever.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from tollgate.billing.constants import PaymentIntentKind
from tollgate.billing.constants import PaymentIntentStatus
from tollgate.billing.constants import PaymentRailName
from tollgate.billing.constants import PurchaseStatus
from tollgate.billing.constants import SubscriptionOrigin
from tollgate.billing.constants import SubscriptionStatus
from tollgate.billing.constants import UserSubscriptionStatus
from tollgate.billing.constants import WebhookReceiptStatus
from tollgate.billing.constants import period_days_for
from tollgate.billing.discounts import increment_coupon_usage_by_code
from tollgate.billing.events import CheckoutCompleted
from tollgate.billing.events import InvoicePaid
from tollgate.billing.events import InvoicePaymentFailed
from tollgate.billing.events import SubscriptionChanged
from tollgate.billing.events import SubscriptionDeleted
from tollgate.billing.exceptions import EventInProgress
from tollgate.billing.exceptions import NotFound
from tollgate.billing.exceptions import SignatureMismatch
from tollgate.billing.models import PaymentIntent
from tollgate.billing.models import Product
from tollgate.billing.models import Purchase
from tollgate.billing.models import Subscription
from tollgate.billing.models import WebhookEventReceipt
from tollgate.billing.rails.crypto import CryptomusRail
from tollgate.billing.renewals import handle_subscription_renewal
from tollgate.billing.renewals import schedule_renewal_reminder
from tollgate.users.models import User

if TYPE_CHECKING:
    from tollgate.billing.events import BillingEvent
    from tollgate.billing.events import CryptoPaymentUpdate

logger = logging.getLogger(__name__)


# Receipts
# ------------------------------------------------------------------


def claim_event(rail: str, event_id: str, event_type: str = "") -> WebhookEventReceipt | None:
    """
    Claim an event for processing.

    Returns the receipt to finish, or None if the event was already applied.
    Failed receipts, and PROCESSING receipts untouched for longer than
    ``WEBHOOK_RECEIPT_STALE_SECONDS``, are claimed again.

    Raises EventInProgress while another worker still holds a fresh claim.
    """
    try:
        with transaction.atomic():
            return WebhookEventReceipt.objects.create(
                rail=rail,
                event_id=event_id,
                event_type=event_type,
            )
    except IntegrityError:
        now = timezone.now()
        stale_before = now - timedelta(seconds=settings.WEBHOOK_RECEIPT_STALE_SECONDS)
        reclaimed = (
            WebhookEventReceipt.objects.filter(rail=rail, event_id=event_id)
            .filter(
                Q(status=WebhookReceiptStatus.FAILED)
                | Q(status=WebhookReceiptStatus.PROCESSING, modified__lt=stale_before),
            )
            .update(status=WebhookReceiptStatus.PROCESSING, modified=now)
        )
        if reclaimed:
            logger.info("Reclaimed webhook receipt %s:%s", rail, event_id)
            return WebhookEventReceipt.objects.get(rail=rail, event_id=event_id)

        current = (
            WebhookEventReceipt.objects.filter(rail=rail, event_id=event_id)
            .values_list("status", flat=True)
            .first()
        )
        if current == WebhookReceiptStatus.COMPLETED:
            return None
        raise EventInProgress(f"Event {event_id} is already being processed")


def _finish(receipt: WebhookEventReceipt, status: str) -> None:
    receipt.status = status
    receipt.save(update_fields=["status", "modified"])


# Card rail
# ------------------------------------------------------------------


def reconcile_stripe_event(event: BillingEvent) -> None:
    """Apply one normalized card-rail event exactly once."""
    receipt = claim_event(PaymentRailName.STRIPE, event.event_id, type(event).__name__)
    if receipt is None:
        logger.info("Stripe event %s already processed; skipping", event.event_id)
        return

    try:
        _apply_stripe_event(event)
    except Exception:
        _finish(receipt, WebhookReceiptStatus.FAILED)
        raise
    _finish(receipt, WebhookReceiptStatus.COMPLETED)


def _apply_stripe_event(event: BillingEvent) -> None:
    if isinstance(event, SubscriptionChanged):
        apply_subscription_changed(event)
    elif isinstance(event, SubscriptionDeleted):
        apply_subscription_deleted(event)
    elif isinstance(event, InvoicePaid):
        logger.info(
            "Invoice paid for customer %s (subscription %s)",
            event.customer_id,
            event.subscription_id,
        )
    elif isinstance(event, InvoicePaymentFailed):
        apply_invoice_payment_failed(event)
    elif isinstance(event, CheckoutCompleted):
        apply_checkout_completed(event)
    else:
        logger.warning("Unhandled card event %r", event)


def _user_for_customer(customer_id: str) -> User | None:
    if not customer_id:
        return None
    return User.objects.filter(stripe_customer_id=customer_id).first()


def apply_subscription_changed(event: SubscriptionChanged) -> Subscription | None:
    """Upsert our Subscription from the processor's copy, keyed by its id."""
    user = _user_for_customer(event.customer_id)
    if user is None:
        logger.warning("No user for Stripe customer %s; dropping event", event.customer_id)
        return None

    product = None
    if event.price_id:
        product = Product.objects.filter(stripe_price_id=event.price_id).first()

    with transaction.atomic():
        subscription = (
            Subscription.objects.select_for_update()
            .filter(provider_subscription_id=event.subscription_id)
            .first()
        )

        if subscription is None:
            if product is None:
                logger.warning(
                    "No product for Stripe price %s (subscription %s); dropping event",
                    event.price_id,
                    event.subscription_id,
                )
                return None
            subscription = Subscription.objects.create(
                user=user,
                product=product,
                status=event.status,
                origin=SubscriptionOrigin.STRIPE,
                provider_subscription_id=event.subscription_id,
                provider_customer_id=event.customer_id,
                current_period_start=event.current_period_start,
                current_period_end=event.current_period_end,
                cancel_at_period_end=event.cancel_at_period_end,
                canceled_at=event.canceled_at,
            )
            logger.info(
                "Created subscription %s for user %s (status=%s)",
                event.subscription_id,
                user.id,
                event.status,
            )
        else:
            subscription.status = event.status
            subscription.current_period_start = event.current_period_start
            subscription.current_period_end = event.current_period_end
            subscription.cancel_at_period_end = event.cancel_at_period_end
            subscription.canceled_at = event.canceled_at
            if product is not None:
                subscription.product = product
            subscription.save()
            logger.info(
                "Updated subscription %s (status=%s, cancel_at_period_end=%s)",
                event.subscription_id,
                event.status,
                event.cancel_at_period_end,
            )

        user.set_subscription_state(event.status, subscription.product)

    return subscription


def apply_subscription_deleted(event: SubscriptionDeleted) -> None:
    now = timezone.now()
    updated = Subscription.objects.filter(
        provider_subscription_id=event.subscription_id,
    ).update(
        status=SubscriptionStatus.CANCELED,
        canceled_at=now,
        modified=now,
    )
    if not updated:
        logger.warning("Deleted Stripe subscription %s not found locally", event.subscription_id)

    user = _user_for_customer(event.customer_id)
    if user is not None:
        user.set_subscription_state(UserSubscriptionStatus.CANCELED, None)

    logger.info("Subscription %s canceled upstream", event.subscription_id)


def apply_invoice_payment_failed(event: InvoicePaymentFailed) -> None:
    updated = User.objects.filter(stripe_customer_id=event.customer_id).update(
        subscription_status=UserSubscriptionStatus.PAST_DUE,
    )
    if updated:
        logger.info("Invoice payment failed for customer %s; marked past_due", event.customer_id)
    else:
        logger.warning("Invoice payment failed for unknown customer %s", event.customer_id)


def apply_checkout_completed(event: CheckoutCompleted) -> Purchase | None:
    """
    Record a one-time card purchase.

    Subscription checkouts are ignored here: the subscription events that
    follow them carry the authoritative state.
    """
    if event.mode != "payment":
        return None

    user = _user_for_customer(event.customer_id)
    if user is None:
        logger.warning("No user for Stripe customer %s; dropping checkout", event.customer_id)
        return None

    product_id = event.metadata.get("productId")
    if not product_id or not event.metadata.get("type"):
        logger.warning("Checkout %s is missing product metadata", event.payment_reference)
        return None

    product = Product.objects.filter(pk=product_id).first()
    if product is None:
        logger.warning("Checkout references unknown product %s", product_id)
        return None

    purchase, created = Purchase.objects.get_or_create(
        payment_reference=event.payment_reference,
        defaults={
            "user": user,
            "product": product,
            "amount": event.amount_total,
            "currency": event.currency,
            "status": PurchaseStatus.COMPLETED,
            "purchased_at": timezone.now(),
        },
    )
    if not created:
        return purchase

    logger.info("Recorded purchase of product %s by user %s", product.id, user.id)
    increment_coupon_usage_by_code(event.metadata.get("couponCode"))
    return purchase


# Crypto rail
# ------------------------------------------------------------------


def reconcile_cryptomus_webhook(
    payload: dict,
    rail: CryptomusRail | None = None,
) -> PaymentIntent | None:
    """
    Verify and apply a crypto gateway notification.

    Raises SignatureMismatch for forged payloads, NotFound for payments we
    never created and EventInProgress while another worker is applying the
    same status. Returns the PaymentIntent, or None when the
    notification carries a status we do not track.
    """
    rail = rail or CryptomusRail()
    if not rail.verify_webhook(payload, payload.get("sign")):
        logger.error("Invalid Cryptomus webhook signature for payment %s", payload.get("uuid"))
        raise SignatureMismatch

    event = rail.normalize_event(payload)
    if event is None:
        return None

    intent = (
        PaymentIntent.objects.select_related("product", "user", "related_subscription")
        .filter(uuid=event.uuid)
        .first()
    )
    if intent is None:
        logger.error("Cryptomus payment %s not found", event.uuid)
        msg = "Payment not found"
        raise NotFound(msg)

    receipt = claim_event(
        PaymentRailName.CRYPTOMUS,
        f"{event.uuid}:{event.status}",
        event.status,
    )
    if receipt is None:
        logger.info("Cryptomus payment %s already at %s; skipping", event.uuid, event.status)
        return intent

    try:
        apply_crypto_payment_update(intent, event)
    except Exception:
        _finish(receipt, WebhookReceiptStatus.FAILED)
        raise
    _finish(receipt, WebhookReceiptStatus.COMPLETED)
    return intent


def apply_crypto_payment_update(intent: PaymentIntent, event: CryptoPaymentUpdate) -> None:
    now = timezone.now()
    paid = event.status == PaymentIntentStatus.PAID

    # Paid is terminal; status callbacks can arrive out of order.
    if intent.status == PaymentIntentStatus.PAID and not paid:
        logger.warning(
            "Ignoring late %s status for paid Cryptomus payment %s",
            event.status,
            intent.uuid,
        )
        return

    intent.status = event.status
    update_fields = ["status", "modified"]
    if paid:
        intent.paid_at = now
        intent.crypto_currency = event.payer_currency
        intent.crypto_amount = event.payer_amount
        intent.network = event.network
        update_fields += ["paid_at", "crypto_currency", "crypto_amount", "network"]

    if not paid:
        intent.save(update_fields=update_fields)
        logger.info("Cryptomus payment %s is now %s", intent.uuid, event.status)
        return

    if intent.kind == PaymentIntentKind.SUBSCRIPTION_RENEWAL:
        intent.save(update_fields=update_fields)
        if intent.related_subscription_id is None:
            logger.error("Renewal payment %s has no linked subscription", intent.uuid)
        else:
            handle_subscription_renewal(intent.uuid, intent.related_subscription_id)
        increment_coupon_usage_by_code(intent.coupon_code)
        return

    with transaction.atomic():
        intent.save(update_fields=update_fields)
        if intent.kind == PaymentIntentKind.ONE_TIME:
            _record_crypto_purchase(intent, now)
            subscription = None
        else:
            subscription = _activate_crypto_subscription(intent, now)

    if (
        subscription is not None
        and intent.kind == PaymentIntentKind.PREPAID_SUBSCRIPTION
        and intent.product.is_monthly
    ):
        schedule_renewal_reminder(intent.user, intent.product, subscription.current_period_end)

    increment_coupon_usage_by_code(intent.coupon_code)


def _record_crypto_purchase(intent: PaymentIntent, now) -> Purchase:
    purchase, created = Purchase.objects.get_or_create(
        payment_reference=f"cryptomus_{intent.uuid}",
        defaults={
            "user": intent.user,
            "product": intent.product,
            "amount": intent.amount,
            "currency": intent.currency,
            "status": PurchaseStatus.COMPLETED,
            "purchased_at": now,
        },
    )
    if created:
        logger.info(
            "Recorded crypto purchase of product %s by user %s",
            intent.product_id,
            intent.user_id,
        )
    return purchase


def _activate_crypto_subscription(intent: PaymentIntent, now) -> Subscription | None:
    """Start a crypto-billed subscription. Returns None if it already exists."""
    product = intent.product
    subscription, created = Subscription.objects.get_or_create(
        provider_subscription_id=f"cryptomus_{intent.uuid}",
        defaults={
            "user": intent.user,
            "product": product,
            "status": SubscriptionStatus.ACTIVE,
            "origin": SubscriptionOrigin.CRYPTOMUS,
            "current_period_start": now,
            "current_period_end": now + timedelta(days=period_days_for(product.interval)),
        },
    )
    if not created:
        return None

    intent.user.set_subscription_state(UserSubscriptionStatus.ACTIVE, product)
    logger.info(
        "Activated crypto subscription %s for user %s until %s",
        subscription.provider_subscription_id,
        intent.user_id,
        subscription.current_period_end.isoformat(),
    )
    return subscription
