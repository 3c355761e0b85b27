"""
RescueBag — Payment provider client and webhook normalization

The provider is opaque: it hands out a checkout URL for an order and later
reports PENDING / SUCCESS / FAILURE for a provider reference, either when
polled or through a gateway webhook.

Transport failures (timeouts, refused connections) are retried with
exponential backoff and surface as PaymentProviderUnavailable. An answer from
the provider, including "failed", is never retried.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from rescuebag.core.config import get_settings
from rescuebag.core.errors import InvalidWebhook, PaymentProviderUnavailable
from rescuebag.models.order import PaymentMethod, PaymentOutcome

settings = get_settings()
logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)

PROVIDER_STATUS_MAP: dict[str, PaymentOutcome] = {
    "pending": PaymentOutcome.PENDING,
    "processing": PaymentOutcome.PENDING,
    "in_process": PaymentOutcome.PENDING,
    "success": PaymentOutcome.SUCCESS,
    "succeeded": PaymentOutcome.SUCCESS,
    "approved": PaymentOutcome.SUCCESS,
    "paid": PaymentOutcome.SUCCESS,
    "failure": PaymentOutcome.FAILURE,
    "failed": PaymentOutcome.FAILURE,
    "rejected": PaymentOutcome.FAILURE,
    "declined": PaymentOutcome.FAILURE,
}


@dataclass(frozen=True)
class Checkout:
    provider_reference: str
    payment_url: str


@dataclass(frozen=True)
class WebhookNotification:
    provider_reference: str
    order_id: str
    outcome: PaymentOutcome
    amount: int  # minor units
    method: PaymentMethod
    raw: dict[str, Any] = field(default_factory=dict)
    failure_reason: str | None = None


class PaymentProvider(Protocol):
    async def initiate_payment(
        self, order_id: str, amount: int, method: PaymentMethod, currency: str, customer_email: str,
    ) -> Checkout: ...

    async def get_payment_status(self, provider_reference: str) -> PaymentOutcome: ...


def parse_provider_status(value: str) -> PaymentOutcome:
    try:
        return PROVIDER_STATUS_MAP[str(value).lower()]
    except KeyError:
        raise ValueError(f"Unknown provider payment status: {value!r}")


class HttpPaymentProvider:
    """Client for the external payment provider with retry logic"""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.PAYMENT_PROVIDER_URL).rstrip("/")
        self.timeout = timeout or settings.PAYMENT_HTTP_TIMEOUT_SECONDS

    @retry(
        stop=stop_after_attempt(settings.PAYMENT_MAX_RETRIES),
        wait=wait_exponential(multiplier=settings.PAYMENT_RETRY_DELAY, min=1, max=10),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, f"{self.base_url}{path}", **kwargs)

    async def _call(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._request(method, path, **kwargs)
        except TRANSIENT_ERRORS as exc:
            logger.error("Payment provider unreachable after retries: %s", exc)
            raise PaymentProviderUnavailable(f"Payment provider unavailable: {exc}") from exc

        if response.status_code >= 500:
            raise PaymentProviderUnavailable(
                f"Payment provider error: status {response.status_code}"
            )
        response.raise_for_status()
        return response.json()

    async def initiate_payment(
        self, order_id: str, amount: int, method: PaymentMethod, currency: str, customer_email: str,
    ) -> Checkout:
        data = await self._call(
            "POST",
            "/payments",
            json={
                "order_id": order_id,
                "amount": amount,
                "currency": currency,
                "method": method.value,
                "customer_email": customer_email,
                "description": f"Pack order #{order_id[-6:]}",
            },
        )
        return Checkout(provider_reference=str(data["reference"]), payment_url=data["payment_url"])

    async def get_payment_status(self, provider_reference: str) -> PaymentOutcome:
        data = await self._call("GET", f"/payments/{provider_reference}")
        return parse_provider_status(data["status"])


# ─── Webhooks ─────────────────────────────────────────────────────────────────

def verify_webhook_signature(secret: str, body: bytes, signature: str | None) -> None:
    """HMAC-SHA256 over the raw body, hex encoded. No secret configured → no check."""
    if not secret:
        return
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("Rejected payment webhook with invalid signature")
        raise InvalidWebhook("Webhook signature is invalid.")


def _to_minor_units(amount: Any) -> int:
    return int(round(float(amount) * 100))


def _stripe(payload: dict[str, Any]) -> WebhookNotification:
    event_type = payload["type"]
    intent = payload["data"]["object"]
    metadata = intent.get("metadata") or {}
    if event_type == "payment_intent.succeeded":
        outcome = PaymentOutcome.SUCCESS
    elif event_type == "payment_intent.payment_failed":
        outcome = PaymentOutcome.FAILURE
    else:
        raise InvalidWebhook(f"Unsupported Stripe event: {event_type}")
    error = intent.get("last_payment_error") or {}
    return WebhookNotification(
        provider_reference=str(intent["id"]),
        order_id=str(metadata.get("order_id") or metadata["orderId"]),
        outcome=outcome,
        amount=int(intent["amount"]),  # Stripe already reports minor units
        method=PaymentMethod.STRIPE,
        raw=intent,
        failure_reason=error.get("message") if outcome is PaymentOutcome.FAILURE else None,
    )


def _mercadopago(payload: dict[str, Any]) -> WebhookNotification:
    if payload.get("type") != "payment":
        raise InvalidWebhook(f"Unsupported MercadoPago notification: {payload.get('type')}")
    payment = payload["data"]
    status = str(payment["status"]).lower()
    if status == "approved":
        outcome = PaymentOutcome.SUCCESS
    elif status in ("pending", "in_process"):
        outcome = PaymentOutcome.PENDING
    else:
        outcome = PaymentOutcome.FAILURE
    return WebhookNotification(
        provider_reference=str(payment["id"]),
        order_id=str(payment["external_reference"]),
        outcome=outcome,
        amount=_to_minor_units(payment["transaction_amount"]),
        method=PaymentMethod.MERCADOPAGO,
        raw=payment,
        failure_reason=payment.get("status_detail") if outcome is PaymentOutcome.FAILURE else None,
    )


def _payu(payload: dict[str, Any]) -> WebhookNotification:
    state = str(payload["state_pol"])
    if state == "4":
        outcome = PaymentOutcome.SUCCESS
    elif state == "7":
        outcome = PaymentOutcome.PENDING
    else:
        outcome = PaymentOutcome.FAILURE
    return WebhookNotification(
        provider_reference=str(payload["transaction_id"]),
        order_id=str(payload["reference_sale"]),
        outcome=outcome,
        amount=_to_minor_units(payload["value"]),
        method=PaymentMethod.PAYU,
        raw=payload,
        failure_reason=payload.get("response_message_pol") if outcome is PaymentOutcome.FAILURE else None,
    )


WEBHOOK_PARSERS = {
    "stripe": _stripe,
    "mercadopago": _mercadopago,
    "payu": _payu,
}


def normalize_webhook(gateway: str, payload: dict[str, Any]) -> WebhookNotification:
    parser = WEBHOOK_PARSERS.get(gateway.lower())
    if parser is None:
        raise InvalidWebhook(f"Unsupported payment gateway: {gateway}")
    try:
        return parser(payload)
    except InvalidWebhook:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidWebhook(f"Malformed {gateway} webhook: {exc!r}") from exc
