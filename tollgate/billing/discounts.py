"""
Coupon validation and discount arithmetic.

All amounts are integer minor units. Percentage discounts round half up to
the nearest cent, and a discounted price never leaves ``[0, price]``.

Usage:
    result = validate_coupon("SPRING20", product_id=product.id)
    if result.valid:
        final_price = apply_discount(product.price, result.coupon)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP
from decimal import Decimal

from django.db.models import F
from django.utils import timezone

from tollgate.billing.constants import CouponScope
from tollgate.billing.constants import DiscountType
from tollgate.billing.constants import ProductKind
from tollgate.billing.models import Coupon
from tollgate.billing.models import Product
from tollgate.billing.models import normalize_coupon_code

logger = logging.getLogger(__name__)

FULL_DISCOUNT_PERCENT = 100


@dataclass(frozen=True)
class DiscountSummary:
    type: str
    value: int
    display_text: str


@dataclass
class CouponValidation:
    """Outcome of validate_coupon. ``error`` is set iff ``valid`` is False."""

    valid: bool
    coupon: Coupon | None = None
    discount: DiscountSummary | None = None
    error: str = ""

    def as_dict(self) -> dict:
        if not self.valid:
            return {"valid": False, "error": self.error}
        return {
            "valid": True,
            "coupon": {
                "id": self.coupon.id,
                "code": self.coupon.code,
            },
            "discount": {
                "type": self.discount.type,
                "value": self.discount.value,
                "displayText": self.discount.display_text,
            },
        }


def format_discount(coupon: Coupon) -> str:
    """Human readable discount, e.g. ``20% off`` or ``$10.00 off``."""
    if coupon.discount_type == DiscountType.PERCENTAGE:
        return f"{coupon.discount_value}% off"
    return f"${coupon.discount_value / 100:.2f} off"


def validate_coupon(code: str, product_id: int | None = None) -> CouponValidation:
    """
    Decide whether ``code`` can be redeemed, optionally against a product.

    Checks run in a fixed order and the first failure wins: existence and
    active flag, expiry, usage limit, then product eligibility.
    """
    normalized = normalize_coupon_code(code)
    coupon = (
        Coupon.objects.filter(code=normalized, is_active=True).first()
        if normalized
        else None
    )
    if coupon is None:
        return CouponValidation(valid=False, error="Coupon code not found or inactive")

    if coupon.is_expired(timezone.now()):
        return CouponValidation(valid=False, error="Coupon has expired")

    if coupon.is_exhausted:
        return CouponValidation(valid=False, error="Coupon usage limit reached")

    if product_id is not None:
        product = Product.objects.filter(pk=product_id).first()
        if product is None:
            return CouponValidation(valid=False, error="Product not found")
        error = _eligibility_error(coupon, product)
        if error:
            return CouponValidation(valid=False, error=error)

    return CouponValidation(
        valid=True,
        coupon=coupon,
        discount=DiscountSummary(
            type=coupon.discount_type,
            value=coupon.discount_value,
            display_text=format_discount(coupon),
        ),
    )


def _eligibility_error(coupon: Coupon, product: Product) -> str:
    if coupon.applies_to == CouponScope.SPECIFIC:
        if not coupon.specific_products.filter(pk=product.pk).exists():
            return "Coupon not applicable to this product"
    elif coupon.applies_to == CouponScope.SUBSCRIPTIONS:
        if product.kind != ProductKind.SUBSCRIPTION:
            return "Coupon only applies to subscription products"
    elif coupon.applies_to == CouponScope.ONE_TIME:
        if product.kind != ProductKind.ONE_TIME:
            return "Coupon only applies to one-time products"
    return ""


def apply_discount(price: int, coupon: Coupon | None) -> int:
    """Final price in minor units after applying ``coupon`` to ``price``."""
    if coupon is None:
        return price

    if coupon.discount_type == DiscountType.PERCENTAGE:
        percent = min(max(coupon.discount_value, 0), FULL_DISCOUNT_PERCENT)
        remaining = Decimal(price) * (Decimal(100 - percent) / Decimal(100))
        discounted = int(remaining.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    else:
        discounted = price - coupon.discount_value

    return min(max(discounted, 0), price)


def is_free_coupon(coupon: Coupon | None) -> bool:
    return (
        coupon is not None
        and coupon.discount_type == DiscountType.PERCENTAGE
        and coupon.discount_value == FULL_DISCOUNT_PERCENT
    )


def increment_coupon_usage(coupon_id: int) -> bool:
    """
    Record one redemption of a coupon.

    Uses a single UPDATE so concurrent confirmations cannot lose increments.
    Returns False if the coupon no longer exists.
    """
    updated = Coupon.objects.filter(pk=coupon_id).update(
        current_uses=F("current_uses") + 1,
        modified=timezone.now(),
    )
    return updated > 0


def increment_coupon_usage_by_code(code: str | None) -> bool:
    """
    Best-effort usage bump after a confirmed payment.

    A failure here must never undo or block the payment it follows, so
    errors are logged and reported as False.
    """
    normalized = normalize_coupon_code(code or "")
    if not normalized:
        return False

    try:
        coupon_id = (
            Coupon.objects.filter(code=normalized).values_list("id", flat=True).first()
        )
        if coupon_id is None:
            logger.warning("Cannot record usage: coupon %s not found", normalized)
            return False
        return increment_coupon_usage(coupon_id)
    except Exception:
        logger.exception("Failed to record usage for coupon %s", normalized)
        return False
