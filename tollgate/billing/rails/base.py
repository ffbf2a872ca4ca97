"""
Payment rail interface.

A rail is one way of taking money (the card processor, the crypto gateway).
The checkout orchestrator prices the order and hands a PricedCheckout to the
rail; the rail talks to its provider and hands back a CheckoutResult. Inbound
webhooks go the other way: the rail verifies and normalizes them into
tollgate.billing.events records for the reconciler.
"""

from __future__ import annotations

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Any

if TYPE_CHECKING:
    from tollgate.billing.events import BillingEvent
    from tollgate.billing.models import Coupon
    from tollgate.billing.models import Product
    from tollgate.users.models import User


@dataclass
class PricedCheckout:
    """Everything a rail needs to create a provider-side payment object."""

    user: User
    product: Product
    price_type: str
    amount: int
    success_url: str
    cancel_url: str
    coupon: Coupon | None = None
    order_id: str = ""
    intent_kind: str = ""
    callback_url: str = ""


@dataclass
class CheckoutResult:
    url: str
    session_id: str = ""
    payment_id: str = ""
    order_id: str = ""
    is_prepaid: bool = False

    def as_dict(self) -> dict:
        data: dict[str, Any] = {"url": self.url}
        if self.session_id:
            data["sessionId"] = self.session_id
        if self.payment_id:
            data["paymentId"] = self.payment_id
        if self.order_id:
            data["orderId"] = self.order_id
        if self.is_prepaid:
            data["isPrepaid"] = True
        return data


class PaymentRail(ABC):
    name: str = ""

    @abstractmethod
    def create_checkout(self, checkout: PricedCheckout) -> CheckoutResult:
        """Create the provider-side payment object and return where to send the user."""

    @abstractmethod
    def verify_webhook(self, payload: Any, signature: str | None) -> bool:
        """Return True only if ``payload`` was really sent by the provider."""

    @abstractmethod
    def normalize_event(self, raw: Any) -> BillingEvent | None:
        """Translate a raw provider payload, or None for events we ignore."""
