from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import CharField
from django.utils.translation import gettext_lazy as _

from tollgate.billing.constants import UserSubscriptionStatus


class User(AbstractUser):
    """
    Default custom user model for Tollgate.

    Carries the card processor's customer id and a denormalized copy of the
    user's subscription state. The billing webhooks keep the mirror in sync;
    the Subscription table stays the source of truth.
    """

    # First and last name do not cover name patterns around the globe
    name = CharField(_("Name of User"), blank=True, max_length=255)

    stripe_customer_id = models.CharField(
        _("Stripe customer ID"),
        max_length=255,
        blank=True,
        db_index=True,
    )
    subscription_status = models.CharField(
        _("Subscription status"),
        max_length=30,
        choices=UserSubscriptionStatus.choices,
        default=UserSubscriptionStatus.NONE,
    )
    current_product = models.ForeignKey(
        "billing.Product",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="current_users",
    )

    def __str__(self) -> str:
        return self.email or self.username

    @property
    def display_name(self) -> str:
        return self.name or self.username

    def set_subscription_state(self, status: str, product=None) -> None:
        """Mirror a subscription transition onto the user row."""
        self.subscription_status = status
        self.current_product = product
        self.save(update_fields=["subscription_status", "current_product"])
