"""
Django admin configuration for billing models.

Provides admin interfaces for:
- Product: catalogue entries and their Stripe ids
- Coupon: discount codes and usage
- Subscription / PaymentIntent / Purchase: entitlement records
- RenewalReminder / WebhookEventReceipt: sweep and webhook bookkeeping
"""

from django.contrib import admin

from tollgate.billing.models import Coupon
from tollgate.billing.models import PaymentIntent
from tollgate.billing.models import Product
from tollgate.billing.models import Purchase
from tollgate.billing.models import RenewalReminder
from tollgate.billing.models import Subscription
from tollgate.billing.models import WebhookEventReceipt


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "kind",
        "price",
        "currency",
        "interval",
        "stripe_price_id",
        "is_active",
        "sort_order",
    ]
    list_editable = ["is_active", "sort_order"]
    list_filter = ["kind", "interval", "is_active"]
    ordering = ["sort_order"]
    search_fields = ["name"]

    fieldsets = [
        (None, {"fields": ["name", "description", "kind", "is_active"]}),
        ("Pricing", {"fields": ["price", "currency", "interval"]}),
        (
            "Stripe",
            {
                "fields": ["stripe_product_id", "stripe_price_id"],
                "description": "Created on first checkout when left blank.",
            },
        ),
        ("Display", {"fields": ["sort_order"]}),
    ]


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    list_display = [
        "code",
        "discount_type",
        "discount_value",
        "applies_to",
        "current_uses",
        "max_uses",
        "expires_at",
        "is_active",
    ]
    list_filter = ["discount_type", "applies_to", "is_active"]
    search_fields = ["code", "name"]
    filter_horizontal = ["specific_products"]
    readonly_fields = ["current_uses", "stripe_coupon_id", "created", "modified"]


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Admin for user subscriptions on either rail."""

    list_display = [
        "user",
        "product",
        "status",
        "origin",
        "current_period_end",
        "cancel_at_period_end",
        "provider_subscription_id",
    ]
    list_filter = ["status", "origin", "cancel_at_period_end"]
    search_fields = [
        "user__email",
        "provider_subscription_id",
        "provider_customer_id",
    ]
    raw_id_fields = ["user"]
    readonly_fields = ["created", "modified"]

    fieldsets = [
        (None, {"fields": ["user", "product", "status", "origin"]}),
        (
            "Provider",
            {"fields": ["provider_subscription_id", "provider_customer_id"]},
        ),
        (
            "Billing Period",
            {
                "fields": [
                    "current_period_start",
                    "current_period_end",
                    "cancel_at_period_end",
                    "canceled_at",
                ],
            },
        ),
        ("Timestamps", {"fields": ["created", "modified"]}),
    ]


@admin.register(PaymentIntent)
class PaymentIntentAdmin(admin.ModelAdmin):
    list_display = ["order_id", "user", "product", "amount", "kind", "status", "paid_at"]
    list_filter = ["status", "kind"]
    search_fields = ["order_id", "uuid", "user__email"]
    raw_id_fields = ["user", "related_subscription"]
    readonly_fields = ["created", "modified"]


@admin.register(Purchase)
class PurchaseAdmin(admin.ModelAdmin):
    list_display = ["user", "product", "amount", "currency", "status", "purchased_at"]
    list_filter = ["status", "purchased_at"]
    search_fields = ["user__email", "payment_reference"]
    raw_id_fields = ["user"]
    readonly_fields = ["created", "modified"]


@admin.register(RenewalReminder)
class RenewalReminderAdmin(admin.ModelAdmin):
    list_display = [
        "user",
        "product",
        "reminder_type",
        "status",
        "reminder_at",
        "renewal_at",
        "reminder_count",
    ]
    list_filter = ["status", "reminder_type"]
    search_fields = ["user__email"]
    raw_id_fields = ["user"]


@admin.register(WebhookEventReceipt)
class WebhookEventReceiptAdmin(admin.ModelAdmin):
    """Read-only log of processed webhook deliveries."""

    list_display = ["rail", "event_id", "event_type", "status", "created"]
    list_filter = ["rail", "status", "event_type"]
    search_fields = ["event_id"]
    readonly_fields = ["rail", "event_id", "event_type", "status", "created", "modified"]
