"""
Crypto rail backed by the Cryptomus payment gateway.

Cryptomus has no recurring billing: every payment is a one-off invoice
identified by a gateway ``uuid`` and our own ``order_id``. Requests are signed
with the merchant API key (see tollgate.billing.signing) and webhooks are
signed the same way.

Amounts leave this module as major-unit decimal strings (``"19.99"``) and
come back in as minor units; the settlement currency is fixed by
configuration regardless of the product's display currency.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from typing import Any

import httpx
from django.conf import settings
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import ValidationError

from tollgate.billing import signing
from tollgate.billing.constants import CRYPTOMUS_PAYMENT_LIFETIME_SECONDS
from tollgate.billing.constants import PaymentIntentStatus
from tollgate.billing.constants import PaymentRailName
from tollgate.billing.events import CryptoPaymentUpdate
from tollgate.billing.exceptions import ProviderError
from tollgate.billing.exceptions import ProviderMisconfigured
from tollgate.billing.rails.base import CheckoutResult
from tollgate.billing.rails.base import PaymentRail
from tollgate.billing.rails.base import PricedCheckout

if TYPE_CHECKING:
    from tollgate.billing.events import BillingEvent

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.cryptomus.com/v1"

# Gateway statuses folded onto the states we track
GATEWAY_STATUS_MAP = {
    "paid": PaymentIntentStatus.PAID,
    "paid_over": PaymentIntentStatus.PAID,
    "fail": PaymentIntentStatus.FAIL,
    "cancel": PaymentIntentStatus.FAIL,
    "system_fail": PaymentIntentStatus.FAIL,
    "wrong_amount": PaymentIntentStatus.WRONG_AMOUNT,
    "wrong_amount_waiting": PaymentIntentStatus.WRONG_AMOUNT,
    "process": PaymentIntentStatus.PROCESS,
    "check": PaymentIntentStatus.CONFIRM_CHECK,
    "confirm_check": PaymentIntentStatus.CONFIRM_CHECK,
}


class CryptomusPayment(BaseModel):
    """The ``result`` object of a payment create/info response."""

    model_config = ConfigDict(extra="ignore")

    uuid: str
    order_id: str
    amount: str | None = None
    currency: str | None = None
    url: str = ""
    payment_status: str | None = None
    status: str | None = None
    is_final: bool = False


class CryptomusResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    state: int
    result: CryptomusPayment | None = None
    message: str | None = None


class CryptomusWebhookPayload(BaseModel):
    """Inbound payment notification. Unknown keys are kept for signing."""

    model_config = ConfigDict(extra="allow")

    uuid: str
    order_id: str = ""
    status: str | None = None
    payment_status: str | None = None
    payer_currency: str | None = None
    payer_amount: str | None = None
    network: str | None = None
    is_final: bool = False
    sign: str | None = None

    @property
    def gateway_status(self) -> str:
        return self.payment_status or self.status or ""


def format_amount(minor_units: int) -> str:
    """``1999`` -> ``"19.99"``."""
    return f"{minor_units / 100:.2f}"


def parse_amount(value: str | float | None) -> int:
    """``"19.99"`` -> ``1999``. Unparseable input counts as zero."""
    try:
        return round(float(value) * 100)
    except (TypeError, ValueError):
        return 0


class CryptomusClient:
    """
    Thin signed HTTP client for the Cryptomus merchant API.

    Usage:
        client = CryptomusClient()
        payment = client.create_payment(
            amount=1999,
            currency="usd",
            order_id="one_time_12_7_1700000000000",
            callback_url="https://example.com/api/v1/billing/cryptomus/webhook/",
        )
        redirect(payment.url)
    """

    def __init__(
        self,
        api_key: str | None = None,
        merchant_id: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = api_key or getattr(settings, "CRYPTOMUS_API_KEY", "")
        self.merchant_id = merchant_id or getattr(settings, "CRYPTOMUS_MERCHANT_ID", "")
        self.base_url = (
            base_url or getattr(settings, "CRYPTOMUS_BASE_URL", "") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.timeout = timeout or getattr(settings, "CRYPTOMUS_TIMEOUT_SECONDS", 30)
        self.settlement_currency = getattr(
            settings,
            "CRYPTOMUS_SETTLEMENT_CURRENCY",
            "USD",
        )

        if not self.api_key or not self.merchant_id:
            msg = "Cryptomus is not configured"
            raise ProviderMisconfigured(msg)

    def create_payment(  # noqa: PLR0913
        self,
        *,
        amount: int,
        currency: str,
        order_id: str,
        return_url: str = "",
        success_url: str = "",
        callback_url: str = "",
    ) -> CryptomusPayment:
        if currency.upper() != self.settlement_currency:
            logger.debug(
                "Charging order %s in %s instead of %s",
                order_id,
                self.settlement_currency,
                currency,
            )

        body: dict[str, Any] = {
            "amount": format_amount(amount),
            "currency": self.settlement_currency,
            "order_id": order_id,
            "is_payment_multiple": False,
            "lifetime": CRYPTOMUS_PAYMENT_LIFETIME_SECONDS,
        }
        if return_url:
            body["url_return"] = return_url
        if success_url:
            body["url_success"] = success_url
        if callback_url:
            body["url_callback"] = callback_url

        response = self._post("/payment", body, action="payment creation")
        logger.info(
            "Created Cryptomus payment %s for order %s",
            response.result.uuid,
            order_id,
        )
        return response.result

    def get_payment_status(self, uuid: str) -> CryptomusPayment:
        response = self._post("/payment/info", {"uuid": uuid}, action="payment status check")
        return response.result

    def _post(self, path: str, body: dict[str, Any], *, action: str) -> CryptomusResponse:
        body = {**body, "merchant_id": self.merchant_id}
        headers = {
            "merchant": self.merchant_id,
            "sign": signing.sign(body, self.api_key),
            "Content-Type": "application/json",
        }

        try:
            response = httpx.post(
                f"{self.base_url}{path}",
                content=signing.canonical_json(body).encode("utf-8"),
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.exception("Cryptomus %s request failed", action)
            msg = f"Cryptomus API error: {e}"
            raise ProviderError(msg) from e

        # Raw gateway responses are kept in the logs for manual reconciliation.
        logger.info(
            "Cryptomus %s response: status=%s body=%s",
            action,
            response.status_code,
            response.text,
        )

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            msg = f"Cryptomus API error: {response.status_code} - {message or 'Unknown error'}"
            raise ProviderError(msg)

        try:
            parsed = CryptomusResponse.model_validate(data)
        except ValidationError as e:
            msg = f"Cryptomus {action} returned an unexpected response"
            raise ProviderError(msg) from e

        if parsed.state != 0 or parsed.result is None:
            msg = f"Cryptomus {action} failed: {parsed.message or 'Unknown error'}"
            raise ProviderError(msg)

        return parsed


class CryptomusRail(PaymentRail):
    name = PaymentRailName.CRYPTOMUS

    def __init__(self, client: CryptomusClient | None = None):
        self.client = client or CryptomusClient()

    def create_checkout(self, checkout: PricedCheckout) -> CheckoutResult:
        payment = self.client.create_payment(
            amount=checkout.amount,
            currency=checkout.product.currency,
            order_id=checkout.order_id,
            return_url=checkout.cancel_url,
            success_url=checkout.success_url,
            callback_url=checkout.callback_url,
        )
        return CheckoutResult(
            url=payment.url,
            payment_id=payment.uuid,
            order_id=checkout.order_id,
        )

    def verify_webhook(self, payload: Any, signature: str | None) -> bool:
        if not isinstance(payload, dict):
            return False
        return signing.verify(
            payload,
            signature,
            self.client.api_key,
            self.client.merchant_id,
        )

    def normalize_event(self, raw: Any) -> BillingEvent | None:
        try:
            payload = CryptomusWebhookPayload.model_validate(raw)
        except ValidationError:
            logger.warning("Malformed Cryptomus webhook payload: %s", raw)
            return None

        status = GATEWAY_STATUS_MAP.get(payload.gateway_status)
        if status is None:
            logger.info(
                "Ignoring Cryptomus status %r for payment %s",
                payload.gateway_status,
                payload.uuid,
            )
            return None

        return CryptoPaymentUpdate(
            uuid=payload.uuid,
            order_id=payload.order_id,
            status=status,
            payer_currency=payload.payer_currency or "",
            payer_amount=payload.payer_amount or "",
            network=payload.network or "",
            is_final=payload.is_final,
        )
