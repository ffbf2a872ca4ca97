import django.db.models.deletion
import django.utils.timezone
import model_utils.fields
from django.conf import settings
from django.db import migrations
from django.db import models


def _timestamps():
    return [
        (
            "created",
            model_utils.fields.AutoCreatedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="created",
            ),
        ),
        (
            "modified",
            model_utils.fields.AutoLastModifiedField(
                default=django.utils.timezone.now,
                editable=False,
                verbose_name="modified",
            ),
        ),
    ]


def _id():
    return (
        "id",
        models.BigAutoField(
            auto_created=True,
            primary_key=True,
            serialize=False,
            verbose_name="ID",
        ),
    )


SUBSCRIPTION_STATUS_CHOICES = [
    ("active", "Active"),
    ("canceled", "Canceled"),
    ("incomplete", "Incomplete"),
    ("incomplete_expired", "Incomplete (expired)"),
    ("past_due", "Past due"),
    ("trialing", "Trialing"),
    ("unpaid", "Unpaid"),
    ("paused", "Paused"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("users", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Product",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                (
                    "kind",
                    models.CharField(
                        choices=[("one_time", "One-time"), ("subscription", "Subscription")],
                        default="one_time",
                        max_length=20,
                    ),
                ),
                (
                    "price",
                    models.PositiveIntegerField(
                        help_text="Price in minor currency units (cents).",
                    ),
                ),
                ("currency", models.CharField(default="usd", max_length=3)),
                (
                    "interval",
                    models.CharField(
                        blank=True,
                        choices=[("month", "Monthly"), ("year", "Yearly")],
                        help_text="Billing interval. Required for subscriptions, empty otherwise.",
                        max_length=10,
                    ),
                ),
                ("stripe_product_id", models.CharField(blank=True, max_length=255)),
                ("stripe_price_id", models.CharField(blank=True, max_length=255)),
                ("is_active", models.BooleanField(default=True)),
                ("sort_order", models.IntegerField(default=0)),
            ],
            options={
                "ordering": ["sort_order", "name"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(
                                ("interval__in", ["month", "year"]),
                                ("kind", "subscription"),
                            ),
                            models.Q(("interval", ""), ("kind", "one_time")),
                            _connector="OR",
                        ),
                        name="billing_product_interval_matches_kind",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Coupon",
            fields=[
                _id(),
                *_timestamps(),
                ("code", models.CharField(max_length=64, unique=True)),
                ("name", models.CharField(blank=True, max_length=255)),
                (
                    "discount_type",
                    models.CharField(
                        choices=[("percentage", "Percentage"), ("fixed", "Fixed amount")],
                        default="percentage",
                        max_length=20,
                    ),
                ),
                (
                    "discount_value",
                    models.PositiveIntegerField(
                        help_text="Percent (0-100) for percentage coupons, cents for fixed ones.",
                    ),
                ),
                (
                    "max_uses",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Null = unlimited.",
                        null=True,
                    ),
                ),
                ("current_uses", models.PositiveIntegerField(default=0)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                (
                    "applies_to",
                    models.CharField(
                        choices=[
                            ("all", "All products"),
                            ("specific", "Specific products"),
                            ("subscriptions", "Subscriptions only"),
                            ("one_time", "One-time purchases only"),
                        ],
                        default="all",
                        max_length=20,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                ("stripe_coupon_id", models.CharField(blank=True, max_length=255)),
                (
                    "specific_products",
                    models.ManyToManyField(
                        blank=True,
                        help_text="Only used when applies_to is 'specific'.",
                        related_name="coupons",
                        to="billing.product",
                    ),
                ),
            ],
            options={
                "ordering": ["code"],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "status",
                    models.CharField(
                        choices=SUBSCRIPTION_STATUS_CHOICES,
                        default="active",
                        max_length=30,
                    ),
                ),
                (
                    "origin",
                    models.CharField(
                        choices=[
                            ("stripe", "Stripe"),
                            ("cryptomus", "Cryptomus"),
                            ("free", "Free (card checkout)"),
                            ("free_crypto", "Free (crypto checkout)"),
                        ],
                        default="stripe",
                        max_length=20,
                    ),
                ),
                ("provider_subscription_id", models.CharField(max_length=255, unique=True)),
                ("provider_customer_id", models.CharField(blank=True, max_length=255)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.product",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
                "indexes": [
                    models.Index(
                        fields=["status", "current_period_end"],
                        name="billing_sub_status_end_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentIntent",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "uuid",
                    models.CharField(
                        help_text="Payment uuid assigned by the crypto gateway.",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("order_id", models.CharField(max_length=255, unique=True)),
                ("amount", models.PositiveIntegerField(help_text="Amount in cents.")),
                ("currency", models.CharField(default="usd", max_length=10)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("one_time", "One-time"),
                            ("subscription", "Subscription"),
                            ("prepaid_subscription", "Prepaid subscription"),
                            ("subscription_renewal", "Subscription renewal"),
                        ],
                        max_length=30,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("paid", "Paid"),
                            ("fail", "Failed"),
                            ("wrong_amount", "Wrong amount"),
                            ("process", "Processing"),
                            ("confirm_check", "Confirming"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("payment_url", models.URLField(blank=True, max_length=1000)),
                ("coupon_code", models.CharField(blank=True, max_length=64)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("crypto_currency", models.CharField(blank=True, max_length=20)),
                ("crypto_amount", models.CharField(blank=True, max_length=64)),
                ("network", models.CharField(blank=True, max_length=64)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_intents",
                        to="billing.product",
                    ),
                ),
                (
                    "related_subscription",
                    models.ForeignKey(
                        blank=True,
                        help_text="Subscription being renewed (renewal payments only).",
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="renewal_payments",
                        to="billing.subscription",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_intents",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
            },
        ),
        migrations.CreateModel(
            name="Purchase",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "payment_reference",
                    models.CharField(
                        help_text="Card payment intent id, or cryptomus_/free_/free_crypto_ id.",
                        max_length=255,
                        unique=True,
                    ),
                ),
                ("amount", models.PositiveIntegerField(help_text="Amount paid in cents.")),
                ("currency", models.CharField(default="usd", max_length=10)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                        ],
                        default="completed",
                        max_length=20,
                    ),
                ),
                (
                    "purchased_at",
                    models.DateTimeField(default=django.utils.timezone.now),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchases",
                        to="billing.product",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="purchases",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-purchased_at"],
            },
        ),
        migrations.CreateModel(
            name="RenewalReminder",
            fields=[
                _id(),
                *_timestamps(),
                ("reminder_at", models.DateTimeField()),
                ("renewal_at", models.DateTimeField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("sent", "Sent"),
                            ("renewed", "Renewed"),
                            ("expired", "Expired"),
                            ("canceled", "Canceled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                (
                    "reminder_type",
                    models.CharField(
                        choices=[
                            (
                                "cryptomus_prepaid_subscription",
                                "Prepaid crypto subscription renewal",
                            ),
                            (
                                "cryptomus_subscription_expired",
                                "Crypto subscription expired",
                            ),
                            ("other", "Other"),
                        ],
                        default="other",
                        max_length=40,
                    ),
                ),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("reminder_count", models.PositiveIntegerField(default=0)),
                ("last_reminder_sent_at", models.DateTimeField(blank=True, null=True)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="renewal_reminders",
                        to="billing.product",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="renewal_reminders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["reminder_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "reminder_at"],
                        name="billing_reminder_due_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEventReceipt",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "rail",
                    models.CharField(
                        choices=[("stripe", "Stripe"), ("cryptomus", "Cryptomus")],
                        max_length=20,
                    ),
                ),
                ("event_id", models.CharField(max_length=255)),
                ("event_type", models.CharField(blank=True, max_length=100)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        default="processing",
                        max_length=20,
                    ),
                ),
            ],
            options={
                "ordering": ["-created"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("rail", "event_id"),
                        name="billing_webhook_receipt_unique_event",
                    ),
                ],
            },
        ),
    ]
