"""
Normalized provider events.

Rail adapters turn raw webhook payloads into one of these frozen records; the
reconciler only ever sees these, never provider dicts.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime


@dataclass(frozen=True)
class SubscriptionChanged:
    """A card-rail subscription was created or updated upstream."""

    event_id: str
    subscription_id: str
    customer_id: str
    status: str
    price_id: str = ""
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    created: bool = False


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription_id: str
    customer_id: str


@dataclass(frozen=True)
class InvoicePaid:
    event_id: str
    customer_id: str
    subscription_id: str = ""


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    customer_id: str
    subscription_id: str = ""


@dataclass(frozen=True)
class CheckoutCompleted:
    """A hosted checkout finished. Only ``payment`` mode creates a Purchase."""

    event_id: str
    customer_id: str
    mode: str
    payment_reference: str
    amount_total: int = 0
    currency: str = "usd"
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CryptoPaymentUpdate:
    """A status notification for a crypto payment we created."""

    uuid: str
    order_id: str
    status: str
    payer_currency: str = ""
    payer_amount: str = ""
    network: str = ""
    is_final: bool = False


BillingEvent = (
    SubscriptionChanged
    | SubscriptionDeleted
    | InvoicePaid
    | InvoicePaymentFailed
    | CheckoutCompleted
    | CryptoPaymentUpdate
)
