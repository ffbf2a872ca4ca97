"""
Renewal and expiry sweeps for subscriptions we bill ourselves.

The crypto rail cannot charge a user on a schedule, so a prepaid monthly
subscription is kept alive by:

1. A RenewalReminder written 7 days before the period ends
2. The user paying a fresh ``subscription_renewal`` crypto payment
3. handle_subscription_renewal extending the period when that payment lands

Two sweeps run on an external schedule (management commands, Celery beat or
Cloud Scheduler). Both use conditional UPDATEs, so overlapping runs never
apply the same transition twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from tollgate.billing.checkout import cryptomus_callback_url
from tollgate.billing.constants import CRYPTO_ORIGINS
from tollgate.billing.constants import EXPIRING_WINDOW_DAYS
from tollgate.billing.constants import RENEWAL_REMINDER_LEAD_DAYS
from tollgate.billing.constants import PaymentIntentKind
from tollgate.billing.constants import ReminderStatus
from tollgate.billing.constants import ReminderType
from tollgate.billing.constants import SubscriptionOrigin
from tollgate.billing.constants import SubscriptionStatus
from tollgate.billing.constants import UserSubscriptionStatus
from tollgate.billing.constants import period_days_for
from tollgate.billing.exceptions import NotFound
from tollgate.billing.exceptions import ProviderMisconfigured
from tollgate.billing.models import PaymentIntent
from tollgate.billing.models import RenewalReminder
from tollgate.billing.models import Subscription
from tollgate.billing.rails.crypto import CryptomusRail
from tollgate.billing.signals import renewal_reminder_due

if TYPE_CHECKING:
    from datetime import datetime

    from tollgate.billing.models import Product
    from tollgate.users.models import User

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    checked: int = 0
    expired: int = 0
    sent: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class RenewalPayment:
    payment_id: str
    url: str
    order_id: str

    def as_dict(self) -> dict:
        return {"paymentId": self.payment_id, "url": self.url, "orderId": self.order_id}


def schedule_renewal_reminder(
    user: User,
    product: Product,
    renewal_at: datetime,
    reminder_type: str = ReminderType.CRYPTOMUS_PREPAID_SUBSCRIPTION,
    *,
    reminder_at: datetime | None = None,
) -> RenewalReminder | None:
    """
    Flag a renewal nudge for the sweeper to pick up.

    Defaults to firing 7 days before ``renewal_at``. Best-effort: a failure
    is logged and None is returned, never raised, because it always follows
    a payment that has already been recorded.
    """
    if reminder_at is None:
        reminder_at = renewal_at - timedelta(days=RENEWAL_REMINDER_LEAD_DAYS)

    try:
        return RenewalReminder.objects.create(
            user=user,
            product=product,
            reminder_at=reminder_at,
            renewal_at=renewal_at,
            reminder_type=reminder_type,
        )
    except Exception:
        logger.exception(
            "Failed to schedule renewal reminder for user %s, product %s",
            user.pk,
            product.pk,
        )
        return None


def expire_overdue_subscriptions(now: datetime | None = None) -> SweepResult:
    """
    Move active subscriptions whose period has ended out of ACTIVE.

    Card-processor subscriptions (and free card grants) become PAST_DUE: the
    processor keeps retrying and will tell us the final outcome by webhook.
    Crypto subscriptions are CANCELED with cancel_at_period_end set, since
    nothing will ever retry them, and monthly ones get an immediate
    "your subscription expired" reminder.
    """
    now = now or timezone.now()
    result = SweepResult()

    overdue = Subscription.objects.filter(
        status=SubscriptionStatus.ACTIVE,
        current_period_end__lt=now,
    ).select_related("product", "user")

    for subscription in overdue:
        result.checked += 1
        try:
            if _expire_one(subscription, now):
                result.expired += 1
        except Exception as e:
            logger.exception("Error expiring subscription %s", subscription.pk)
            result.errors.append(f"Subscription {subscription.pk}: {e}")

    logger.info(
        "Expiry sweep: checked=%s expired=%s errors=%s",
        result.checked,
        result.expired,
        len(result.errors),
    )
    return result


def _expire_one(subscription: Subscription, now: datetime) -> bool:
    still_active = Subscription.objects.filter(
        pk=subscription.pk,
        status=SubscriptionStatus.ACTIVE,
    )

    if subscription.origin != SubscriptionOrigin.CRYPTOMUS:
        updated = still_active.update(status=SubscriptionStatus.PAST_DUE, modified=now)
        if updated:
            logger.info("Subscription %s lapsed; marked past_due", subscription.pk)
        return bool(updated)

    updated = still_active.update(
        status=SubscriptionStatus.CANCELED,
        cancel_at_period_end=True,
        canceled_at=now,
        modified=now,
    )
    if not updated:
        return False

    logger.info("Crypto subscription %s expired; canceled", subscription.pk)
    if subscription.product.is_monthly:
        schedule_renewal_reminder(
            subscription.user,
            subscription.product,
            renewal_at=now,
            reminder_type=ReminderType.CRYPTOMUS_SUBSCRIPTION_EXPIRED,
            reminder_at=now,
        )
    return True


def dispatch_due_reminders(now: datetime | None = None) -> SweepResult:
    """
    Mark due reminders SENT and announce them on ``renewal_reminder_due``.

    Delivering the notification is the receivers' job; this pass only
    guarantees each reminder is dispatched once.
    """
    now = now or timezone.now()
    result = SweepResult()

    due = RenewalReminder.objects.filter(
        status=ReminderStatus.PENDING,
        reminder_at__lte=now,
    ).select_related("user", "product")

    for reminder in due:
        result.checked += 1
        try:
            claimed = RenewalReminder.objects.filter(
                pk=reminder.pk,
                status=ReminderStatus.PENDING,
            ).update(
                status=ReminderStatus.SENT,
                sent_at=now,
                reminder_count=F("reminder_count") + 1,
                last_reminder_sent_at=now,
                modified=now,
            )
            if not claimed:
                continue

            reminder.refresh_from_db()
            responses = renewal_reminder_due.send_robust(sender=RenewalReminder, reminder=reminder)
            for receiver, response in responses:
                if isinstance(response, Exception):
                    logger.error(
                        "Reminder receiver %s failed for reminder %s: %s",
                        receiver,
                        reminder.pk,
                        response,
                    )
            logger.info(
                "Renewal reminder sent for user %s, product %s",
                reminder.user_id,
                reminder.product_id,
            )
            result.sent += 1
        except Exception as e:
            logger.exception("Error processing renewal reminder %s", reminder.pk)
            result.errors.append(f"Reminder {reminder.pk}: {e}")

    logger.info(
        "Reminder sweep: checked=%s sent=%s errors=%s",
        result.checked,
        result.sent,
        len(result.errors),
    )
    return result


def handle_subscription_renewal(payment_uuid: str, subscription_id: int) -> Subscription:
    """
    Extend a crypto subscription by one period after a renewal payment.

    The new period starts where the old one ended, so paying early never
    loses days. Outstanding reminders for the product are closed as RENEWED
    before the next one is scheduled.
    """
    subscription = (
        Subscription.objects.select_related("product", "user")
        .filter(pk=subscription_id)
        .first()
    )
    if subscription is None:
        msg = "Subscription not found"
        raise NotFound(msg)

    product = subscription.product
    user = subscription.user
    period_start = subscription.current_period_end or timezone.now()
    period_end = period_start + timedelta(days=period_days_for(product.interval))

    with transaction.atomic():
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.save(
            update_fields=[
                "current_period_start",
                "current_period_end",
                "status",
                "cancel_at_period_end",
                "canceled_at",
                "modified",
            ],
        )
        user.set_subscription_state(UserSubscriptionStatus.ACTIVE, product)

        closed = RenewalReminder.objects.filter(
            user=user,
            product=product,
            status=ReminderStatus.PENDING,
        ).update(status=ReminderStatus.RENEWED, modified=timezone.now())

    if product.is_monthly:
        schedule_renewal_reminder(user, product, period_end)

    logger.info(
        "Renewed subscription %s via payment %s until %s (closed %s reminder(s))",
        subscription.pk,
        payment_uuid,
        period_end.isoformat(),
        closed,
    )
    return subscription


def renew_prepaid_subscription(
    subscription_id: int,
    user: User,
    rail: CryptomusRail | None = None,
) -> RenewalPayment:
    """Create the crypto payment that will renew ``subscription_id`` for one period."""
    subscription = (
        Subscription.objects.select_related("product")
        .filter(pk=subscription_id, user=user)
        .first()
    )
    if subscription is None:
        msg = "Subscription not found or access denied"
        raise NotFound(msg)
    if subscription.origin not in CRYPTO_ORIGINS:
        msg = "Only crypto subscriptions can be renewed with a crypto payment"
        raise ProviderMisconfigured(msg)

    product = subscription.product
    rail = rail or CryptomusRail()
    order_id = f"renewal_{subscription.pk}_{int(timezone.now().timestamp() * 1000)}"

    payment = rail.client.create_payment(
        amount=product.price,
        currency=product.currency,
        order_id=order_id,
        return_url=f"{settings.SITE_URL}/dash?renewal=canceled",
        success_url=f"{settings.SITE_URL}/dash?renewal=success",
        callback_url=cryptomus_callback_url(),
    )

    PaymentIntent.objects.create(
        user=user,
        product=product,
        uuid=payment.uuid,
        order_id=order_id,
        amount=product.price,
        currency=product.currency,
        kind=PaymentIntentKind.SUBSCRIPTION_RENEWAL,
        payment_url=payment.url,
        related_subscription=subscription,
    )

    logger.info(
        "Created renewal payment %s for subscription %s",
        payment.uuid,
        subscription.pk,
    )
    return RenewalPayment(payment_id=payment.uuid, url=payment.url, order_id=order_id)


def get_expiring_subscriptions(
    user: User,
    days: int = EXPIRING_WINDOW_DAYS,
    now: datetime | None = None,
):
    """The user's active crypto-billed subscriptions ending within ``days``."""
    now = now or timezone.now()
    return (
        Subscription.objects.filter(
            user=user,
            status=SubscriptionStatus.ACTIVE,
            origin__in=CRYPTO_ORIGINS,
            current_period_end__lte=now + timedelta(days=days),
        )
        .select_related("product")
        .order_by("current_period_end")
    )
