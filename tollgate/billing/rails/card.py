"""
Card rail backed by Stripe.

This service provides a clean interface for:
- Getting or creating Stripe customers
- Mirroring our Products and Coupons into Stripe's catalogue
- Creating Stripe Checkout sessions (one-time and subscription)
- Creating Customer Portal sessions
- Scheduling cancellation, resuming, and swapping subscription items

We use Stripe Checkout (not custom payment forms) for PCI compliance.
Signature checks for inbound webhooks happen in dj-stripe before our signal
receivers run; verify_webhook exists for callers that receive raw payloads.
"""

from __future__ import annotations

import logging
from datetime import UTC
from datetime import datetime
from typing import TYPE_CHECKING
from typing import Any

import stripe
from django.conf import settings

from tollgate.billing.constants import DiscountType
from tollgate.billing.constants import PaymentRailName
from tollgate.billing.constants import ProductKind
from tollgate.billing.events import CheckoutCompleted
from tollgate.billing.events import InvoicePaid
from tollgate.billing.events import InvoicePaymentFailed
from tollgate.billing.events import SubscriptionChanged
from tollgate.billing.events import SubscriptionDeleted
from tollgate.billing.exceptions import ProviderError
from tollgate.billing.exceptions import ProviderMisconfigured
from tollgate.billing.rails.base import CheckoutResult
from tollgate.billing.rails.base import PaymentRail
from tollgate.billing.rails.base import PricedCheckout

if TYPE_CHECKING:
    from tollgate.billing.events import BillingEvent
    from tollgate.billing.models import Coupon
    from tollgate.billing.models import Product
    from tollgate.users.models import User

logger = logging.getLogger(__name__)


def _stripe_error_message(exc: stripe.StripeError) -> str:
    return getattr(exc, "user_message", None) or str(exc) or "Stripe request failed"


def _from_timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class StripeRail(PaymentRail):
    """
    Service for Stripe billing operations.

    Usage:
        rail = StripeRail()
        result = rail.create_checkout(priced_checkout)
        redirect(result.url)
    """

    name = PaymentRailName.STRIPE

    def __init__(self):
        """Initialize with Stripe API key from settings."""
        if not getattr(settings, "STRIPE_SECRET_KEY", ""):
            msg = "Stripe is not configured"
            raise ProviderMisconfigured(msg)
        stripe.api_key = settings.STRIPE_SECRET_KEY

    # Customers
    # ------------------------------------------------------------------

    def get_or_create_customer(self, user: User) -> str:
        """
        Get existing Stripe customer or create a new one.

        Returns the Stripe customer ID (cus_xxx) and mirrors it onto the user.
        """
        if user.stripe_customer_id:
            return user.stripe_customer_id

        try:
            customer = stripe.Customer.create(
                email=user.email,
                name=user.name or user.username,
                metadata={"user_id": str(user.id)},
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create Stripe customer for user %s", user.id)
            raise ProviderError(_stripe_error_message(e)) from e

        user.stripe_customer_id = customer.id
        user.save(update_fields=["stripe_customer_id"])

        logger.info("Created Stripe customer %s for user %s", customer.id, user.id)
        return customer.id

    # Catalogue mirroring
    # ------------------------------------------------------------------

    def ensure_product_price(self, product: Product) -> tuple[str, str]:
        """
        Return (stripe_product_id, stripe_price_id) for ``product``.

        Stored ids are reused only if both still resolve upstream and the
        price is active; otherwise a fresh product and price are created and
        mirrored back onto our row.
        """
        if product.stripe_product_id and product.stripe_price_id:
            try:
                stripe.Product.retrieve(product.stripe_product_id)
                price = stripe.Price.retrieve(product.stripe_price_id)
                if price.active:
                    return product.stripe_product_id, product.stripe_price_id
                logger.info(
                    "Stripe price %s is inactive; recreating for product %s",
                    product.stripe_price_id,
                    product.id,
                )
            except stripe.InvalidRequestError:
                logger.warning(
                    "Stored Stripe ids for product %s no longer resolve; recreating",
                    product.id,
                )
            except stripe.StripeError as e:
                logger.exception("Failed to verify Stripe ids for product %s", product.id)
                raise ProviderError(_stripe_error_message(e)) from e

        product_params: dict[str, Any] = {
            "name": product.name,
            "metadata": {"product_id": str(product.id)},
        }
        if product.description:
            product_params["description"] = product.description

        price_params: dict[str, Any] = {
            "unit_amount": product.price,
            "currency": product.currency,
        }
        if product.kind == ProductKind.SUBSCRIPTION:
            price_params["recurring"] = {"interval": product.interval}

        try:
            stripe_product = stripe.Product.create(**product_params)
            stripe_price = stripe.Price.create(product=stripe_product.id, **price_params)
        except stripe.StripeError as e:
            logger.exception("Failed to create Stripe catalogue for product %s", product.id)
            raise ProviderError(_stripe_error_message(e)) from e

        product.stripe_product_id = stripe_product.id
        product.stripe_price_id = stripe_price.id
        product.save(update_fields=["stripe_product_id", "stripe_price_id", "modified"])

        logger.info(
            "Mirrored product %s to Stripe (product=%s, price=%s)",
            product.id,
            stripe_product.id,
            stripe_price.id,
        )
        return stripe_product.id, stripe_price.id

    def ensure_coupon(self, coupon: Coupon, currency: str = "usd") -> str:
        """Return a Stripe coupon id equivalent to ``coupon``, creating it if needed."""
        if coupon.stripe_coupon_id:
            try:
                stripe.Coupon.retrieve(coupon.stripe_coupon_id)
                return coupon.stripe_coupon_id
            except stripe.InvalidRequestError:
                logger.warning(
                    "Stored Stripe coupon %s no longer resolves; recreating",
                    coupon.stripe_coupon_id,
                )
            except stripe.StripeError as e:
                logger.exception("Failed to verify Stripe coupon %s", coupon.code)
                raise ProviderError(_stripe_error_message(e)) from e

        params: dict[str, Any] = {
            "name": coupon.code,
            "duration": "once",
            "metadata": {"coupon_id": str(coupon.id)},
        }
        if coupon.discount_type == DiscountType.PERCENTAGE:
            params["percent_off"] = coupon.discount_value
        else:
            params["amount_off"] = coupon.discount_value
            params["currency"] = currency

        try:
            stripe_coupon = stripe.Coupon.create(**params)
        except stripe.StripeError as e:
            logger.exception("Failed to create Stripe coupon for %s", coupon.code)
            raise ProviderError(_stripe_error_message(e)) from e

        coupon.stripe_coupon_id = stripe_coupon.id
        coupon.save(update_fields=["stripe_coupon_id", "modified"])
        return stripe_coupon.id

    # Checkout & portal
    # ------------------------------------------------------------------

    def create_checkout(self, checkout: PricedCheckout) -> CheckoutResult:
        customer_id = self.get_or_create_customer(checkout.user)
        _, price_id = self.ensure_product_price(checkout.product)

        coupon_id = ""
        if checkout.coupon is not None:
            coupon_id = self.ensure_coupon(checkout.coupon, checkout.product.currency)

        mode = (
            "subscription"
            if checkout.product.kind == ProductKind.SUBSCRIPTION
            else "payment"
        )
        metadata = {
            "userId": str(checkout.user.id),
            "productId": str(checkout.product.id),
            "type": checkout.price_type,
        }
        if checkout.coupon is not None:
            metadata["couponCode"] = checkout.coupon.code

        return self.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            mode=mode,
            discount_coupon_id=coupon_id,
            metadata=metadata,
            success_url=checkout.success_url,
            cancel_url=checkout.cancel_url,
        )

    def create_checkout_session(  # noqa: PLR0913
        self,
        *,
        customer_id: str,
        price_id: str,
        mode: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        discount_coupon_id: str = "",
    ) -> CheckoutResult:
        """
        Create a Stripe Checkout session.

        A session-level discount and user-entered promotion codes are
        mutually exclusive in Stripe, so promotion codes are only allowed
        when no coupon was applied by us.
        """
        params: dict[str, Any] = {
            "customer": customer_id,
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "billing_address_collection": "required",
            "metadata": metadata,
        }
        if discount_coupon_id:
            params["discounts"] = [{"coupon": discount_coupon_id}]
        else:
            params["allow_promotion_codes"] = True
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.exception("Failed to create checkout session for %s", customer_id)
            raise ProviderError(_stripe_error_message(e)) from e

        logger.info(
            "Created checkout session %s for customer %s (mode=%s)",
            session.id,
            customer_id,
            mode,
        )
        return CheckoutResult(url=session.url, session_id=session.id)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.exception("Failed to create portal session for %s", customer_id)
            raise ProviderError(_stripe_error_message(e)) from e

        logger.info("Created portal session for customer %s", customer_id)
        return session.url

    # Subscription changes
    # ------------------------------------------------------------------

    def cancel_at_period_end(self, subscription_id: str) -> None:
        self._modify_subscription(subscription_id, cancel_at_period_end=True)
        logger.info("Scheduled cancellation of Stripe subscription %s", subscription_id)

    def resume(self, subscription_id: str) -> None:
        self._modify_subscription(subscription_id, cancel_at_period_end=False)
        logger.info("Resumed Stripe subscription %s", subscription_id)

    def change_subscription_item(
        self,
        subscription_id: str,
        new_price_id: str,
        proration_behavior: str = "create_prorations",
    ) -> None:
        """Swap the subscription's single item onto ``new_price_id``."""
        try:
            stripe_sub = stripe.Subscription.retrieve(subscription_id)
            item_id = stripe_sub["items"]["data"][0]["id"]
        except stripe.StripeError as e:
            logger.exception("Failed to load Stripe subscription %s", subscription_id)
            raise ProviderError(_stripe_error_message(e)) from e
        except (KeyError, IndexError) as e:
            msg = f"Stripe subscription {subscription_id} has no items"
            raise ProviderError(msg) from e

        self._modify_subscription(
            subscription_id,
            items=[{"id": item_id, "price": new_price_id}],
            proration_behavior=proration_behavior,
        )
        logger.info(
            "Moved Stripe subscription %s to price %s (%s)",
            subscription_id,
            new_price_id,
            proration_behavior,
        )

    def _modify_subscription(self, subscription_id: str, **params) -> None:
        try:
            stripe.Subscription.modify(subscription_id, **params)
        except stripe.StripeError as e:
            logger.exception("Failed to modify Stripe subscription %s", subscription_id)
            raise ProviderError(_stripe_error_message(e)) from e

    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: Any, signature: str | None) -> bool:
        secret = getattr(settings, "DJSTRIPE_WEBHOOK_SECRET", "")
        if not signature or not secret:
            return False
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(payload, signature, secret)
        except stripe.SignatureVerificationError:
            return False
        return True

    def normalize_event(self, raw: Any) -> BillingEvent | None:
        return normalize_stripe_event(raw)


def normalize_stripe_event(raw: Any) -> BillingEvent | None:
    """
    Translate a Stripe event (``{"id", "type", "data": {"object"}}``).

    Returns None for event types the reconciler does not act on.
    """
    event_id = raw.get("id", "")
    event_type = raw.get("type", "")
    obj = (raw.get("data") or {}).get("object") or {}

    if event_type in (
        "customer.subscription.created",
        "customer.subscription.updated",
    ):
        return _subscription_changed(
            event_id,
            obj,
            created=event_type == "customer.subscription.created",
        )
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=obj.get("id", ""),
            customer_id=obj.get("customer") or "",
        )
    if event_type == "invoice.payment_succeeded":
        return InvoicePaid(
            event_id=event_id,
            customer_id=obj.get("customer") or "",
            subscription_id=obj.get("subscription") or "",
        )
    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(
            event_id=event_id,
            customer_id=obj.get("customer") or "",
            subscription_id=obj.get("subscription") or "",
        )
    if event_type == "checkout.session.completed":
        return CheckoutCompleted(
            event_id=event_id,
            customer_id=obj.get("customer") or "",
            mode=obj.get("mode") or "",
            payment_reference=obj.get("payment_intent") or obj.get("id", ""),
            amount_total=obj.get("amount_total") or 0,
            currency=obj.get("currency") or "usd",
            metadata=dict(obj.get("metadata") or {}),
        )
    return None


def _subscription_changed(event_id: str, obj: dict, *, created: bool) -> SubscriptionChanged:
    items = (obj.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price_id = (first_item.get("price") or {}).get("id", "")

    # Newer API versions moved the billing period onto the items.
    period_start = obj.get("current_period_start") or first_item.get(
        "current_period_start",
    )
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")

    return SubscriptionChanged(
        event_id=event_id,
        subscription_id=obj.get("id", ""),
        customer_id=obj.get("customer") or "",
        status=obj.get("status", ""),
        price_id=price_id,
        current_period_start=_from_timestamp(period_start),
        current_period_end=_from_timestamp(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=_from_timestamp(obj.get("canceled_at")),
        created=created,
    )
