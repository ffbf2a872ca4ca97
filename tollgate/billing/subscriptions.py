"""
Self-service subscription management.

Stripe-managed subscriptions are changed upstream first and the local row
is updated to match (the webhook that follows will confirm it). Crypto and
free subscriptions have nothing upstream to change, so only the local row
is touched, and plan switches are not supported for them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.utils import timezone

from tollgate.billing.constants import CURRENT_SUBSCRIPTION_STATUSES
from tollgate.billing.constants import ProductKind
from tollgate.billing.constants import SubscriptionStatus
from tollgate.billing.exceptions import CheckoutValidationError
from tollgate.billing.exceptions import NotFound
from tollgate.billing.exceptions import ProviderMisconfigured
from tollgate.billing.models import Product
from tollgate.billing.models import Purchase
from tollgate.billing.models import Subscription
from tollgate.billing.rails.card import StripeRail

if TYPE_CHECKING:
    from tollgate.users.models import User

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionChangeResult:
    success: bool
    message: str
    subscription: Subscription

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "subscription": serialize_subscription(self.subscription),
        }


def serialize_product(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "price": product.price,
        "currency": product.currency,
    }


def serialize_subscription(subscription: Subscription) -> dict:
    period_end = subscription.current_period_end
    return {
        "id": subscription.id,
        "product": serialize_product(subscription.product),
        "status": subscription.status,
        "origin": subscription.origin,
        "currentPeriodEnd": period_end.isoformat() if period_end else None,
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
    }


def _get_owned_subscription(user: User, subscription_id) -> Subscription:
    subscription = (
        Subscription.objects.select_related("product")
        .filter(pk=subscription_id, user=user)
        .first()
    )
    if subscription is None:
        msg = "Subscription not found"
        raise NotFound(msg)
    return subscription


def cancel_subscription(user: User, subscription_id) -> SubscriptionChangeResult:
    """Stop the subscription from renewing; access continues until period end."""
    subscription = _get_owned_subscription(user, subscription_id)

    if subscription.is_stripe_managed:
        StripeRail().cancel_at_period_end(subscription.provider_subscription_id)

    subscription.cancel_at_period_end = True
    subscription.save(update_fields=["cancel_at_period_end", "modified"])

    logger.info("User %s canceled subscription %s at period end", user.id, subscription.pk)
    return SubscriptionChangeResult(
        success=True,
        message="Subscription will be canceled at the end of the current period",
        subscription=subscription,
    )


def reactivate_subscription(user: User, subscription_id) -> SubscriptionChangeResult:
    """Undo a pending cancellation while the current period is still running."""
    subscription = _get_owned_subscription(user, subscription_id)

    if not subscription.cancel_at_period_end:
        msg = "Subscription is not scheduled for cancellation"
        raise CheckoutValidationError(msg)

    period_end = subscription.current_period_end
    if subscription.status not in CURRENT_SUBSCRIPTION_STATUSES or (
        period_end is not None and period_end <= timezone.now()
    ):
        msg = "Subscription has already ended; please subscribe again"
        raise CheckoutValidationError(msg)

    if subscription.is_stripe_managed:
        StripeRail().resume(subscription.provider_subscription_id)

    subscription.cancel_at_period_end = False
    subscription.save(update_fields=["cancel_at_period_end", "modified"])

    logger.info("User %s reactivated subscription %s", user.id, subscription.pk)
    return SubscriptionChangeResult(
        success=True,
        message="Subscription reactivated",
        subscription=subscription,
    )


def upgrade_subscription(
    user: User,
    subscription_id,
    new_product_id,
) -> SubscriptionChangeResult:
    """
    Move a Stripe subscription onto another subscription product.

    Stripe prorates the change on the next invoice. Crypto and free
    subscriptions cannot be switched in place.
    """
    subscription = _get_owned_subscription(user, subscription_id)

    new_product = Product.objects.filter(
        pk=new_product_id,
        kind=ProductKind.SUBSCRIPTION,
        is_active=True,
    ).first()
    if new_product is None:
        msg = "Product not found"
        raise NotFound(msg)

    if not subscription.is_stripe_managed:
        msg = "Plan changes for this subscription are not supported; please contact support"
        raise ProviderMisconfigured(msg)

    if subscription.status != SubscriptionStatus.ACTIVE:
        msg = "Only active subscriptions can be changed"
        raise CheckoutValidationError(msg)

    if new_product.pk == subscription.product_id:
        msg = "Already subscribed to this product"
        raise CheckoutValidationError(msg)

    rail = StripeRail()
    _, price_id = rail.ensure_product_price(new_product)
    rail.change_subscription_item(subscription.provider_subscription_id, price_id)

    old_product_id = subscription.product_id
    subscription.product = new_product
    subscription.save(update_fields=["product", "modified"])
    user.current_product = new_product
    user.save(update_fields=["current_product"])

    logger.info(
        "User %s moved subscription %s from product %s to %s",
        user.id,
        subscription.pk,
        old_product_id,
        new_product.pk,
    )
    return SubscriptionChangeResult(
        success=True,
        message="Subscription updated",
        subscription=subscription,
    )


def create_portal_session(user: User, return_url: str) -> str:
    if not user.stripe_customer_id:
        msg = "No Stripe customer found"
        raise ProviderMisconfigured(msg)
    return StripeRail().create_portal_session(user.stripe_customer_id, return_url)


def get_billing_overview(user: User) -> dict:
    """Catalogue plus the user's current subscription and purchases."""
    products = Product.objects.filter(is_active=True)
    current = Subscription.objects.select_related("product").current_for(user)
    purchases = Purchase.objects.filter(user=user).select_related("product")

    return {
        "products": [
            serialize_product(p) for p in products if p.kind == ProductKind.ONE_TIME
        ],
        "plans": [
            {**serialize_product(p), "interval": p.interval}
            for p in products
            if p.kind == ProductKind.SUBSCRIPTION
        ],
        "currentSubscription": serialize_subscription(current) if current else None,
        "purchases": [
            {
                "id": purchase.id,
                "product": serialize_product(purchase.product),
                "amount": purchase.amount,
                "currency": purchase.currency,
                "status": purchase.status,
                "purchasedAt": purchase.purchased_at.isoformat(),
            }
            for purchase in purchases
        ],
    }
