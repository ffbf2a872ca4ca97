"""
Checkout orchestration.

One orchestrator serves both rails:

1. Validate the coupon (if any). A 100%-off coupon is granted directly
   against the ledger without contacting any provider.
2. Resolve the product by id and expected kind.
3. Price the order and hand it to the rail. On the crypto rail we also
   persist a pending PaymentIntent so the webhook has something to reconcile.

Usage:
    service = CheckoutService(get_rail("cryptomus"))
    result = service.start(request.user, CheckoutRequest(productId=3, priceType="subscription"))
    return Response(result.as_dict())
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING
from typing import Literal

from django.conf import settings
from django.db import transaction
from django.urls import reverse
from django.utils import timezone
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from tollgate.billing.constants import MONTHLY_PERIOD_DAYS
from tollgate.billing.constants import PaymentIntentKind
from tollgate.billing.constants import PaymentRailName
from tollgate.billing.constants import ProductKind
from tollgate.billing.constants import SubscriptionOrigin
from tollgate.billing.constants import SubscriptionStatus
from tollgate.billing.constants import UserSubscriptionStatus
from tollgate.billing.discounts import apply_discount
from tollgate.billing.discounts import increment_coupon_usage
from tollgate.billing.discounts import is_free_coupon
from tollgate.billing.discounts import validate_coupon
from tollgate.billing.exceptions import CheckoutValidationError
from tollgate.billing.exceptions import NotFound
from tollgate.billing.exceptions import Unauthenticated
from tollgate.billing.models import PaymentIntent
from tollgate.billing.models import Product
from tollgate.billing.models import Purchase
from tollgate.billing.models import Subscription
from tollgate.billing.rails.base import CheckoutResult
from tollgate.billing.rails.base import PricedCheckout

if TYPE_CHECKING:
    from tollgate.billing.models import Coupon
    from tollgate.billing.rails.base import PaymentRail
    from tollgate.users.models import User

logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    """Checkout payload as posted by the billing UI."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(alias="productId")
    price_type: Literal["one_time", "subscription"] = Field(alias="priceType")
    coupon_code: str | None = Field(default=None, alias="couponCode")
    success_url: str | None = Field(default=None, alias="successUrl")
    cancel_url: str | None = Field(default=None, alias="cancelUrl")


def now_ms() -> int:
    return int(timezone.now().timestamp() * 1000)


def build_order_id(kind: str, product_id: int, user_id: int) -> str:
    """
    Globally unique crypto order id embedding what is being paid for.

    Prepaid monthly subscriptions use ``prepaid_sub_{product}_{user}_{ts}``;
    everything else ``{price_type}_{product}_{user}_{ts}``.
    """
    prefix = "prepaid_sub" if kind == PaymentIntentKind.PREPAID_SUBSCRIPTION else kind
    return f"{prefix}_{product_id}_{user_id}_{now_ms()}"


def default_success_url() -> str:
    return f"{settings.SITE_URL}/dash?success=true"


def default_cancel_url() -> str:
    return f"{settings.SITE_URL}/dash?canceled=true"


def cryptomus_callback_url() -> str:
    return f"{settings.SITE_URL}{reverse('billing:cryptomus-webhook')}"


class CheckoutService:
    """
    Rail-agnostic checkout.

    The rail decides *how* the provider-side payment object is created; this
    service owns coupon handling, pricing and the ledger writes around it.
    """

    def __init__(self, rail: PaymentRail):
        self.rail = rail

    def start(self, user: User | None, request: CheckoutRequest) -> CheckoutResult:
        if user is None or not user.is_authenticated:
            msg = "Authentication required"
            raise Unauthenticated(msg)

        success_url = request.success_url or default_success_url()
        cancel_url = request.cancel_url or default_cancel_url()

        coupon = None
        if request.coupon_code:
            validation = validate_coupon(request.coupon_code, request.product_id)
            if not validation.valid:
                raise CheckoutValidationError(validation.error)
            coupon = validation.coupon

        product = self._resolve_product(request.product_id, request.price_type)

        if is_free_coupon(coupon):
            return self._grant_free(user, product, coupon, success_url)

        checkout = PricedCheckout(
            user=user,
            product=product,
            price_type=request.price_type,
            amount=apply_discount(product.price, coupon),
            success_url=success_url,
            cancel_url=cancel_url,
            coupon=coupon,
        )

        if self.rail.name == PaymentRailName.CRYPTOMUS:
            return self._start_crypto(checkout)
        return self.rail.create_checkout(checkout)

    def _resolve_product(self, product_id: int, price_type: str) -> Product:
        product = Product.objects.filter(
            pk=product_id,
            kind=price_type,
            is_active=True,
        ).first()
        if product is None:
            msg = "Product not found"
            raise NotFound(msg)
        return product

    def _start_crypto(self, checkout: PricedCheckout) -> CheckoutResult:
        product = checkout.product
        if product.is_monthly:
            kind = PaymentIntentKind.PREPAID_SUBSCRIPTION
        else:
            kind = PaymentIntentKind(checkout.price_type)

        checkout.intent_kind = kind
        checkout.order_id = build_order_id(kind, product.id, checkout.user.id)
        checkout.callback_url = cryptomus_callback_url()

        result = self.rail.create_checkout(checkout)

        PaymentIntent.objects.create(
            user=checkout.user,
            product=product,
            uuid=result.payment_id,
            order_id=checkout.order_id,
            amount=checkout.amount,
            currency=product.currency,
            kind=kind,
            payment_url=result.url,
            coupon_code=checkout.coupon.code if checkout.coupon else "",
        )

        logger.info(
            "Created %s crypto payment %s for user %s, product %s (amount=%s)",
            kind,
            result.payment_id,
            checkout.user.id,
            product.id,
            checkout.amount,
        )

        result.is_prepaid = kind == PaymentIntentKind.PREPAID_SUBSCRIPTION
        return result

    def _grant_free(
        self,
        user: User,
        product: Product,
        coupon: Coupon,
        success_url: str,
    ) -> CheckoutResult:
        """Record a fully discounted order directly, without any provider call."""
        origin = (
            SubscriptionOrigin.FREE_CRYPTO
            if self.rail.name == PaymentRailName.CRYPTOMUS
            else SubscriptionOrigin.FREE
        )
        reference = f"{origin}_{user.id}_{now_ms()}"
        now = timezone.now()

        with transaction.atomic():
            if product.kind == ProductKind.SUBSCRIPTION:
                Subscription.objects.create(
                    user=user,
                    product=product,
                    status=SubscriptionStatus.ACTIVE,
                    origin=origin,
                    provider_subscription_id=reference,
                    current_period_start=now,
                    current_period_end=now + timedelta(days=MONTHLY_PERIOD_DAYS),
                )
                user.set_subscription_state(UserSubscriptionStatus.ACTIVE, product)
            else:
                Purchase.objects.create(
                    user=user,
                    product=product,
                    payment_reference=reference,
                    amount=0,
                    currency=product.currency,
                    purchased_at=now,
                )
            increment_coupon_usage(coupon.id)

        logger.info(
            "Granted product %s to user %s with free coupon %s (%s)",
            product.id,
            user.id,
            coupon.code,
            reference,
        )
        return CheckoutResult(url=success_url)
