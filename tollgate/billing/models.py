"""
Billing models for the Tollgate payment ledger.

Key design decisions:
- Product is the single catalogue table for both one-time items and plans
- Money is always integer minor units (cents); currency travels alongside
- PaymentIntent records a crypto payment *before* the gateway confirms it, so
  the webhook reconciler has something durable to transition
- Subscription.origin says which rail (or free grant) produced the row; the
  provider_subscription_id keeps the card processor's id, or a synthetic
  ``cryptomus_``/``free_``/``free_crypto_`` id for everything else

Relationship: User ──1:N── Subscription ──N:1── Product
              User ──1:N── Purchase / PaymentIntent / RenewalReminder
"""

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone
from model_utils.models import TimeStampedModel

from tollgate.billing.constants import CURRENT_SUBSCRIPTION_STATUSES
from tollgate.billing.constants import BillingInterval
from tollgate.billing.constants import CouponScope
from tollgate.billing.constants import DiscountType
from tollgate.billing.constants import PaymentIntentKind
from tollgate.billing.constants import PaymentIntentStatus
from tollgate.billing.constants import PaymentRailName
from tollgate.billing.constants import ProductKind
from tollgate.billing.constants import PurchaseStatus
from tollgate.billing.constants import ReminderStatus
from tollgate.billing.constants import ReminderType
from tollgate.billing.constants import SubscriptionOrigin
from tollgate.billing.constants import SubscriptionStatus
from tollgate.billing.constants import WebhookReceiptStatus


class Product(TimeStampedModel):
    """
    Something a user can pay for, once or on a recurring interval.

    The stripe_* fields mirror the card processor's catalogue objects. They
    are created lazily at first checkout and re-created whenever they stop
    resolving upstream (see StripeRail.ensure_product_price).
    """

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    kind = models.CharField(
        max_length=20,
        choices=ProductKind.choices,
        default=ProductKind.ONE_TIME,
    )
    price = models.PositiveIntegerField(
        help_text="Price in minor currency units (cents).",
    )
    currency = models.CharField(max_length=3, default="usd")
    interval = models.CharField(
        max_length=10,
        choices=BillingInterval.choices,
        blank=True,
        help_text="Billing interval. Required for subscriptions, empty otherwise.",
    )
    stripe_product_id = models.CharField(max_length=255, blank=True)
    stripe_price_id = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    sort_order = models.IntegerField(default=0)

    class Meta:
        ordering = ["sort_order", "name"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(
                        kind=ProductKind.SUBSCRIPTION,
                        interval__in=BillingInterval.values,
                    )
                    | Q(kind=ProductKind.ONE_TIME, interval="")
                ),
                name="billing_product_interval_matches_kind",
            ),
        ]

    def __str__(self) -> str:
        return self.name

    def clean(self):
        super().clean()
        if self.kind == ProductKind.SUBSCRIPTION and not self.interval:
            raise ValidationError({"interval": "Subscriptions need an interval."})
        if self.kind == ProductKind.ONE_TIME and self.interval:
            raise ValidationError(
                {"interval": "One-time products cannot have an interval."},
            )

    @property
    def is_subscription(self) -> bool:
        return self.kind == ProductKind.SUBSCRIPTION

    @property
    def is_monthly(self) -> bool:
        return self.is_subscription and self.interval == BillingInterval.MONTH


class Coupon(TimeStampedModel):
    """
    A discount code redeemable at checkout.

    Codes are stored uppercased and matched case-insensitively. current_uses
    only ever goes up; it is bumped after a payment is confirmed, not when the
    code is validated.
    """

    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255, blank=True)
    discount_type = models.CharField(
        max_length=20,
        choices=DiscountType.choices,
        default=DiscountType.PERCENTAGE,
    )
    discount_value = models.PositiveIntegerField(
        help_text="Percent (0-100) for percentage coupons, cents for fixed ones.",
    )
    max_uses = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Null = unlimited.",
    )
    current_uses = models.PositiveIntegerField(default=0)
    expires_at = models.DateTimeField(null=True, blank=True)
    applies_to = models.CharField(
        max_length=20,
        choices=CouponScope.choices,
        default=CouponScope.ALL,
    )
    specific_products = models.ManyToManyField(
        Product,
        blank=True,
        related_name="coupons",
        help_text="Only used when applies_to is 'specific'.",
    )
    is_active = models.BooleanField(default=True)
    stripe_coupon_id = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["code"]

    def __str__(self) -> str:
        return self.code

    def save(self, *args, **kwargs):
        self.code = normalize_coupon_code(self.code)
        super().save(*args, **kwargs)

    def clean(self):
        super().clean()
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:  # noqa: PLR2004
            raise ValidationError(
                {"discount_value": "Percentage discounts cannot exceed 100."},
            )

    def is_expired(self, now=None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or timezone.now())

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.current_uses >= self.max_uses


def normalize_coupon_code(code: str) -> str:
    return (code or "").strip().upper()


class PaymentIntent(TimeStampedModel):
    """
    A crypto payment created at checkout and awaiting gateway confirmation.

    Created PENDING by the checkout orchestrator, then moved through the
    gateway's states by the webhook reconciler. Never deleted: this is the
    audit trail for every crypto payment we asked a user to make.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="payment_intents",
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name="payment_intents",
    )
    uuid = models.CharField(
        max_length=255,
        unique=True,
        help_text="Payment uuid assigned by the crypto gateway.",
    )
    order_id = models.CharField(max_length=255, unique=True)
    amount = models.PositiveIntegerField(help_text="Amount in cents.")
    currency = models.CharField(max_length=10, default="usd")
    kind = models.CharField(max_length=30, choices=PaymentIntentKind.choices)
    status = models.CharField(
        max_length=20,
        choices=PaymentIntentStatus.choices,
        default=PaymentIntentStatus.PENDING,
    )
    payment_url = models.URLField(max_length=1000, blank=True)
    coupon_code = models.CharField(max_length=64, blank=True)
    related_subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="renewal_payments",
        help_text="Subscription being renewed (renewal payments only).",
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    crypto_currency = models.CharField(max_length=20, blank=True)
    crypto_amount = models.CharField(max_length=64, blank=True)
    network = models.CharField(max_length=64, blank=True)

    class Meta:
        ordering = ["-created"]

    def __str__(self) -> str:
        return f"{self.order_id} ({self.status})"


class SubscriptionQuerySet(models.QuerySet):
    def current(self):
        return self.filter(status__in=CURRENT_SUBSCRIPTION_STATUSES)

    def current_for(self, user):
        """The user's live subscription, if any (newest first)."""
        return self.current().filter(user=user).order_by("-created").first()


class Subscription(TimeStampedModel):
    """
    A user's entitlement to a subscription product for a billing period.

    Card-rail rows are upserts of the processor's subscription object keyed by
    provider_subscription_id. Crypto and free rows are written by us and are
    renewed or expired by the renewal sweeper.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name="subscriptions",
    )
    status = models.CharField(
        max_length=30,
        choices=SubscriptionStatus.choices,
        default=SubscriptionStatus.ACTIVE,
    )
    origin = models.CharField(
        max_length=20,
        choices=SubscriptionOrigin.choices,
        default=SubscriptionOrigin.STRIPE,
    )
    provider_subscription_id = models.CharField(max_length=255, unique=True)
    provider_customer_id = models.CharField(max_length=255, blank=True)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)

    objects = SubscriptionQuerySet.as_manager()

    class Meta:
        ordering = ["-created"]
        indexes = [
            models.Index(
                fields=["status", "current_period_end"],
                name="billing_sub_status_end_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user} - {self.product} ({self.status})"

    @property
    def is_stripe_managed(self) -> bool:
        return self.origin == SubscriptionOrigin.STRIPE


class Purchase(TimeStampedModel):
    """A completed one-time purchase. Immutable once written."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="purchases",
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name="purchases",
    )
    payment_reference = models.CharField(
        max_length=255,
        unique=True,
        help_text="Card payment intent id, or cryptomus_/free_/free_crypto_ id.",
    )
    amount = models.PositiveIntegerField(help_text="Amount paid in cents.")
    currency = models.CharField(max_length=10, default="usd")
    status = models.CharField(
        max_length=20,
        choices=PurchaseStatus.choices,
        default=PurchaseStatus.COMPLETED,
    )
    purchased_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-purchased_at"]

    def __str__(self) -> str:
        return f"{self.user} - {self.product}"


class RenewalReminder(TimeStampedModel):
    """
    A flag-and-poll record telling the sweeper to nudge a user to renew.

    The sweeper picks up PENDING rows whose reminder_at has passed and marks
    them SENT. A paid renewal marks the user's outstanding reminders for the
    product RENEWED.
    """

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="renewal_reminders",
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.CASCADE,
        related_name="renewal_reminders",
    )
    reminder_at = models.DateTimeField()
    renewal_at = models.DateTimeField()
    status = models.CharField(
        max_length=20,
        choices=ReminderStatus.choices,
        default=ReminderStatus.PENDING,
    )
    reminder_type = models.CharField(
        max_length=40,
        choices=ReminderType.choices,
        default=ReminderType.OTHER,
    )
    sent_at = models.DateTimeField(null=True, blank=True)
    reminder_count = models.PositiveIntegerField(default=0)
    last_reminder_sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["reminder_at"]
        indexes = [
            models.Index(
                fields=["status", "reminder_at"],
                name="billing_reminder_due_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"Reminder for {self.user} - {self.product} at {self.reminder_at}"


class WebhookEventReceipt(TimeStampedModel):
    """
    Processed-event set for inbound payment webhooks.

    A row is claimed before an event is applied; the unique (rail, event_id)
    constraint turns a redelivered event into a no-op.
    """

    rail = models.CharField(max_length=20, choices=PaymentRailName.choices)
    event_id = models.CharField(max_length=255)
    event_type = models.CharField(max_length=100, blank=True)
    status = models.CharField(
        max_length=20,
        choices=WebhookReceiptStatus.choices,
        default=WebhookReceiptStatus.PROCESSING,
    )

    class Meta:
        ordering = ["-created"]
        constraints = [
            models.UniqueConstraint(
                fields=["rail", "event_id"],
                name="billing_webhook_receipt_unique_event",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.rail}:{self.event_id} ({self.status})"
