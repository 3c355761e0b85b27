"""
RescueBag — Payment reconciliation

Payment results reach an order from two sides, provider webhooks and status
polling, in any order and possibly more than once. Every result is recorded
as a PaymentAttempt keyed by (provider_reference, outcome); a replay of an
already recorded pair is acknowledged and dropped, everything else goes
through OrderService.apply_payment_outcome, which is itself idempotent.
A record whose outcome could not be applied is released again, and a
replayed SUCCESS the order does not yet show is applied anyway.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable

from rescuebag.core.clock import Clock, utcnow
from rescuebag.core.errors import (
    AlreadyCanceled, AlreadyPaid, AmountMismatch, OrderNotFound, PaymentProviderUnavailable,
    PaymentTimeout,
)
from rescuebag.core.session import SessionContext
from rescuebag.db.order_store import OrderStore
from rescuebag.models.order import FulfillmentStatus, PaymentMethod, PaymentOutcome, PaymentStatus
from rescuebag.schemas.order import Order, PaymentAttempt
from rescuebag.services.order_service import OrderService
from rescuebag.services.payment_provider import (
    PaymentProvider, normalize_webhook, verify_webhook_signature,
)

logger = logging.getLogger(__name__)

SETTLED_PAYMENT = (PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED)


class PaymentReconciler:
    def __init__(
        self,
        orders: OrderService,
        store: OrderStore,
        provider: PaymentProvider,
        clock: Clock = utcnow,
        webhook_secret: str = "",
    ):
        self.orders = orders
        self.store = store
        self.provider = provider
        self.clock = clock
        self.webhook_secret = webhook_secret

    async def start_payment(
        self,
        ctx: SessionContext,
        order_id: str,
        method: PaymentMethod,
        customer_email: str,
    ) -> tuple[PaymentAttempt, Order]:
        """Open a checkout with the provider and move the order to PROCESSING."""
        order = await self.orders.get(ctx, order_id)
        if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            raise AlreadyPaid(f"Order '{order_id}' is already paid.")
        if order.fulfillment_status is FulfillmentStatus.CANCELED:
            raise AlreadyCanceled(f"Order '{order_id}' is canceled.")

        checkout = await self.provider.initiate_payment(
            order.id, order.total_price, method, order.currency, customer_email
        )
        attempt = PaymentAttempt(
            id=str(uuid.uuid4()),
            order_id=order.id,
            method=method,
            provider_reference=checkout.provider_reference,
            outcome=PaymentOutcome.PENDING,
            amount=order.total_price,
            payment_url=checkout.payment_url,
            received_at=self.clock(),
        )
        order, _ = await self.accept(attempt)
        logger.info(
            "Payment %s started for order %s via %s", attempt.provider_reference, order.id, method.value
        )
        return attempt, order

    async def accept(self, attempt: PaymentAttempt) -> tuple[Order, bool]:
        """Record an attempt and apply it. Returns (order, duplicate)."""
        if await self.store.get_order(attempt.order_id) is None:
            raise OrderNotFound(f"Order '{attempt.order_id}' not found.")

        recorded = await self.store.record_payment_attempt(attempt)
        if not recorded:
            order = await self.orders.load(attempt.order_id)
            if attempt.outcome is PaymentOutcome.SUCCESS and order.payment_status not in (
                PaymentStatus.PAID, PaymentStatus.REFUNDED,
            ):
                # Recorded earlier but never applied; SUCCESS is safe to re-apply
                logger.warning(
                    "Recorded payment success %s not reflected on order %s; applying",
                    attempt.provider_reference, attempt.order_id,
                )
                order = await self.orders.apply_payment_outcome(
                    attempt.order_id, attempt.outcome, attempt.method
                )
            else:
                logger.info(
                    "Duplicate payment result %s/%s for order %s ignored",
                    attempt.provider_reference, attempt.outcome.value, attempt.order_id,
                )
            return order, True

        try:
            order = await self.orders.apply_payment_outcome(
                attempt.order_id, attempt.outcome, attempt.method
            )
        except Exception:
            logger.error(
                "Payment result %s/%s for order %s not applied; releasing its record",
                attempt.provider_reference, attempt.outcome.value, attempt.order_id,
            )
            await self.store.forget_payment_attempt(attempt)
            raise
        return order, False

    async def handle_webhook(
        self,
        gateway: str,
        payload: dict[str, Any],
        body: bytes = b"",
        signature: str | None = None,
    ) -> tuple[Order, bool]:
        verify_webhook_signature(self.webhook_secret, body, signature)
        notification = normalize_webhook(gateway, payload)

        order = await self.store.get_order(notification.order_id)
        if order is None:
            raise OrderNotFound(f"Order '{notification.order_id}' not found.")
        if notification.amount != order.total_price:
            logger.warning(
                "Webhook amount mismatch for order %s: expected=%d received=%d",
                order.id, order.total_price, notification.amount,
            )
            raise AmountMismatch(
                f"Amount mismatch: expected {order.total_price}, received {notification.amount}."
            )

        attempt = PaymentAttempt(
            id=str(uuid.uuid4()),
            order_id=order.id,
            method=notification.method,
            provider_reference=notification.provider_reference,
            outcome=notification.outcome,
            amount=notification.amount,
            failure_reason=notification.failure_reason,
            raw=notification.raw,
            received_at=self.clock(),
        )
        logger.info(
            "Webhook %s: order=%s reference=%s outcome=%s",
            gateway, order.id, notification.provider_reference, notification.outcome.value,
        )
        return await self.accept(attempt)

    async def poll_tick(self, order_id: str, provider_reference: str, method: PaymentMethod) -> bool:
        """
        Ask the provider once. Returns True while the payment is still open
        and polling should continue.
        """
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order '{order_id}' not found.")
        if order.payment_status in SETTLED_PAYMENT or order.fulfillment_status is FulfillmentStatus.CANCELED:
            return False

        try:
            outcome = await self.provider.get_payment_status(provider_reference)
        except PaymentProviderUnavailable as exc:
            logger.warning("Polling %s for order %s failed: %s", provider_reference, order_id, exc)
            return True

        if outcome is PaymentOutcome.PENDING:
            return True

        await self.accept(
            PaymentAttempt(
                id=str(uuid.uuid4()),
                order_id=order_id,
                method=method,
                provider_reference=provider_reference,
                outcome=outcome,
                amount=order.total_price,
                received_at=self.clock(),
            )
        )
        return False

    async def poll_until_settled(
        self,
        order_id: str,
        provider_reference: str,
        method: PaymentMethod,
        interval_seconds: float,
        timeout_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Order:
        """
        Poll until the payment settles. Raises PaymentTimeout past the
        deadline; the order keeps its last consistent state.
        """
        deadline = self.clock() + timedelta(seconds=timeout_seconds)
        while await self.poll_tick(order_id, provider_reference, method):
            if self.clock() >= deadline:
                logger.error("Payment %s for order %s did not settle in time", provider_reference, order_id)
                raise PaymentTimeout(
                    f"Payment '{provider_reference}' did not settle within {timeout_seconds}s."
                )
            await sleep(interval_seconds)
        return await self.orders.load(order_id)
