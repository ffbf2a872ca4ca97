"""
Billing constants for the payment reconciliation engine.

These enums define the product kinds, coupon rules, payment intent states and
subscription lifecycle states used throughout the billing module. Subscription
status values mirror the card processor's own vocabulary so webhook payloads
can be stored without translation.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class ProductKind(models.TextChoices):
    ONE_TIME = "one_time", _("One-time")
    SUBSCRIPTION = "subscription", _("Subscription")


class BillingInterval(models.TextChoices):
    MONTH = "month", _("Monthly")
    YEAR = "year", _("Yearly")


class DiscountType(models.TextChoices):
    PERCENTAGE = "percentage", _("Percentage")
    FIXED = "fixed", _("Fixed amount")


class CouponScope(models.TextChoices):
    """
    Which products a coupon can be redeemed against.

    SPECIFIC restricts the coupon to the products linked on the coupon itself.
    """

    ALL = "all", _("All products")
    SPECIFIC = "specific", _("Specific products")
    SUBSCRIPTIONS = "subscriptions", _("Subscriptions only")
    ONE_TIME = "one_time", _("One-time purchases only")


class PaymentRailName(models.TextChoices):
    STRIPE = "stripe", _("Stripe")
    CRYPTOMUS = "cryptomus", _("Cryptomus")


class PaymentIntentKind(models.TextChoices):
    """
    What a crypto payment is paying for.

    The crypto gateway has no recurring billing, so a monthly plan bought with
    crypto is a PREPAID_SUBSCRIPTION: one period paid up front, followed by a
    reminder and a SUBSCRIPTION_RENEWAL payment for each further period.
    """

    ONE_TIME = "one_time", _("One-time")
    SUBSCRIPTION = "subscription", _("Subscription")
    PREPAID_SUBSCRIPTION = "prepaid_subscription", _("Prepaid subscription")
    SUBSCRIPTION_RENEWAL = "subscription_renewal", _("Subscription renewal")


class PaymentIntentStatus(models.TextChoices):
    PENDING = "pending", _("Pending")
    PAID = "paid", _("Paid")
    FAIL = "fail", _("Failed")
    WRONG_AMOUNT = "wrong_amount", _("Wrong amount")
    PROCESS = "process", _("Processing")
    CONFIRM_CHECK = "confirm_check", _("Confirming")


class SubscriptionStatus(models.TextChoices):
    """
    Subscription lifecycle states.

    Typical flow on the card rail:
        INCOMPLETE → ACTIVE (first invoice paid)
        ACTIVE → PAST_DUE (renewal payment failed, or period lapsed unseen)
        ACTIVE → CANCELED (deleted upstream)

    Crypto subscriptions only ever use ACTIVE and CANCELED: they are activated
    by a paid webhook and canceled by the expiry sweep.
    """

    ACTIVE = "active", _("Active")
    CANCELED = "canceled", _("Canceled")
    INCOMPLETE = "incomplete", _("Incomplete")
    INCOMPLETE_EXPIRED = "incomplete_expired", _("Incomplete (expired)")
    PAST_DUE = "past_due", _("Past due")
    TRIALING = "trialing", _("Trialing")
    UNPAID = "unpaid", _("Unpaid")
    PAUSED = "paused", _("Paused")


class UserSubscriptionStatus(models.TextChoices):
    """Subscription state mirrored onto the user for quick access checks."""

    NONE = "none", _("None")
    ACTIVE = "active", _("Active")
    CANCELED = "canceled", _("Canceled")
    INCOMPLETE = "incomplete", _("Incomplete")
    INCOMPLETE_EXPIRED = "incomplete_expired", _("Incomplete (expired)")
    PAST_DUE = "past_due", _("Past due")
    TRIALING = "trialing", _("Trialing")
    UNPAID = "unpaid", _("Unpaid")
    PAUSED = "paused", _("Paused")


class SubscriptionOrigin(models.TextChoices):
    """
    Which rail (or free grant) produced a subscription.

    Drives renewal and expiry behaviour: STRIPE subscriptions renew upstream,
    CRYPTOMUS ones must be renewed by a fresh crypto payment, FREE and
    FREE_CRYPTO come from 100%-off coupons on the respective checkout rail.
    """

    STRIPE = "stripe", _("Stripe")
    CRYPTOMUS = "cryptomus", _("Cryptomus")
    FREE = "free", _("Free (card checkout)")
    FREE_CRYPTO = "free_crypto", _("Free (crypto checkout)")


class PurchaseStatus(models.TextChoices):
    PENDING = "pending", _("Pending")
    COMPLETED = "completed", _("Completed")
    FAILED = "failed", _("Failed")
    REFUNDED = "refunded", _("Refunded")


class ReminderStatus(models.TextChoices):
    PENDING = "pending", _("Pending")
    SENT = "sent", _("Sent")
    RENEWED = "renewed", _("Renewed")
    EXPIRED = "expired", _("Expired")
    CANCELED = "canceled", _("Canceled")


class ReminderType(models.TextChoices):
    CRYPTOMUS_PREPAID_SUBSCRIPTION = (
        "cryptomus_prepaid_subscription",
        _("Prepaid crypto subscription renewal"),
    )
    CRYPTOMUS_SUBSCRIPTION_EXPIRED = (
        "cryptomus_subscription_expired",
        _("Crypto subscription expired"),
    )
    OTHER = "other", _("Other")


class WebhookReceiptStatus(models.TextChoices):
    PROCESSING = "processing", _("Processing")
    COMPLETED = "completed", _("Completed")
    FAILED = "failed", _("Failed")


# Subscription period lengths for rails without native recurring billing
MONTHLY_PERIOD_DAYS = 30
YEARLY_PERIOD_DAYS = 365

# Renewal reminders fire this many days before the period ends
RENEWAL_REMINDER_LEAD_DAYS = 7

# Default look-ahead window for the "expiring soon" listing
EXPIRING_WINDOW_DAYS = 7

# Crypto invoices stay payable for one hour
CRYPTOMUS_PAYMENT_LIFETIME_SECONDS = 3600

# Origins whose renewal is driven by us rather than the card processor
CRYPTO_ORIGINS = (SubscriptionOrigin.CRYPTOMUS, SubscriptionOrigin.FREE_CRYPTO)

# Statuses that count as a "current" subscription for access checks
CURRENT_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
)


def period_days_for(interval: str | None) -> int:
    """Length of one crypto-billed period for the given product interval."""
    if interval == BillingInterval.YEAR:
        return YEARLY_PERIOD_DAYS
    return MONTHLY_PERIOD_DAYS
