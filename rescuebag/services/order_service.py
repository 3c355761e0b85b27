"""
RescueBag — Order Service (authoritative order lifecycle)

Every mutation is read → validate → compare-and-swap on version_id. A lost
race raises StaleDataError inside the store and the whole operation is
retried by with_optimistic_retry, so validation always runs against the
latest committed state. Side effects (QR minting, events) are tied to the
write that actually changed the order, never to a replay.
"""
import logging
import uuid
from datetime import date
from typing import AsyncIterator

from rescuebag.core.clock import Clock, utcnow
from rescuebag.core.errors import (
    AlreadyCanceled, AlreadyFulfilled, InsufficientStock, InvalidQuantity, NotAuthorized,
    OrderNotFound, PackInactive, PackNotFound,
)
from rescuebag.core.optimistic_lock import with_optimistic_retry
from rescuebag.core.qr_token import QrTokenCodec
from rescuebag.core.session import Role, SessionContext
from rescuebag.db.order_store import OrderStore
from rescuebag.models.order import (
    FulfillmentMethod, FulfillmentStatus, PaymentMethod, PaymentOutcome, PaymentStatus,
)
from rescuebag.schemas.order import Order, Pack
from rescuebag.services import state_machine
from rescuebag.services.order_events import (
    NullOrderEventPublisher, OrderEventPublisher, OrderWatcher, PollingOrderWatcher,
)

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(
        self,
        store: OrderStore,
        codec: QrTokenCodec,
        qr_ttl_seconds: int,
        currency: str = "COP",
        clock: Clock = utcnow,
        publisher: OrderEventPublisher | None = None,
        watcher: OrderWatcher | None = None,
    ):
        self.store = store
        self.codec = codec
        self.qr_ttl_seconds = qr_ttl_seconds
        self.currency = currency
        self.clock = clock
        self.publisher = publisher or NullOrderEventPublisher()
        self.watcher = watcher or PollingOrderWatcher(store, interval_seconds=30.0)

    # ── Packs ─────────────────────────────────────────────────────────────────

    async def list_pack(
        self,
        ctx: SessionContext,
        title: str,
        original_price: int,
        discounted_price: int,
        stock: int,
        description: str | None = None,
        pickup_start: str | None = None,
        pickup_end: str | None = None,
    ) -> Pack:
        """Business lists a new surprise bag."""
        if not ctx.is_business:
            raise NotAuthorized("Only businesses can list packs.")
        if discounted_price > original_price:
            raise InvalidQuantity("Discounted price cannot exceed the original price.")
        pack = Pack(
            id=str(uuid.uuid4()),
            business_id=ctx.business_id,
            title=title,
            description=description,
            original_price=original_price,
            discounted_price=discounted_price,
            stock=stock,
            active=True,
            pickup_start=pickup_start,
            pickup_end=pickup_end,
        )
        return await self.store.save_pack(pack)

    async def get_pack(self, pack_id: str) -> Pack:
        pack = await self.store.get_pack(pack_id)
        if pack is None:
            raise PackNotFound(f"Pack '{pack_id}' not found.")
        return pack

    # ── Queries ───────────────────────────────────────────────────────────────

    async def get(self, ctx: SessionContext, order_id: str) -> Order:
        order = await self.load(order_id)
        self._authorize(ctx, order)
        return order

    async def list_orders(
        self,
        ctx: SessionContext,
        status: FulfillmentStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        if ctx.is_business:
            return await self.store.list_orders(
                business_id=ctx.business_id, status=status, limit=limit, offset=offset
            )
        if ctx.role is Role.USER:
            return await self.store.list_orders(
                user_id=ctx.user_id, status=status, limit=limit, offset=offset
            )
        return await self.store.list_orders(status=status, limit=limit, offset=offset)

    async def watch(self, ctx: SessionContext, order_id: str) -> AsyncIterator[Order]:
        await self.get(ctx, order_id)
        async for order in self.watcher.watch(order_id):
            yield order

    # ── Commands ──────────────────────────────────────────────────────────────

    async def create(
        self,
        ctx: SessionContext,
        pack_id: str,
        quantity: int,
        notes: str | None = None,
        pickup_date: date | None = None,
        fulfillment_method: FulfillmentMethod = FulfillmentMethod.PICKUP,
        idempotency_key: str | None = None,
    ) -> Order:
        """
        Reserve `quantity` units of a pack.

        Stock check, stock decrement and order insert are one atomic store
        operation, so concurrent reservations can never oversell. A repeated
        idempotency_key from the same user returns the original order without
        touching stock again.

        Raises:
            InvalidQuantity, PackNotFound, PackInactive, InsufficientStock
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity(f"Quantity must be a positive integer, got {quantity!r}.")

        if idempotency_key:
            existing = await self.store.find_order_by_idempotency_key(ctx.user_id, idempotency_key)
            if existing is not None:
                logger.info("Order %s replayed for idempotency key %s", existing.id, idempotency_key)
                return existing

        pack = await self.get_pack(pack_id)
        if not pack.active:
            raise PackInactive(f"Pack '{pack_id}' is not available.")
        if pack.stock < quantity:
            raise InsufficientStock(
                f"Insufficient stock for pack '{pack_id}': "
                f"requested={quantity}, available={pack.stock}"
            )

        now = self.clock()
        order = Order(
            id=str(uuid.uuid4()),
            user_id=ctx.user_id,
            pack_id=pack.id,
            business_id=pack.business_id,
            quantity=quantity,
            unit_discounted_price=pack.discounted_price,
            unit_original_price=pack.original_price,
            total_price=pack.discounted_price * quantity,
            discount_amount=(pack.original_price - pack.discounted_price) * quantity,
            currency=self.currency,
            fulfillment_method=fulfillment_method,
            notes=notes,
            pickup_date=pickup_date,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create_order_atomic(order)
        if created.id == order.id:
            logger.info(
                "Order %s created: user=%s pack=%s quantity=%d total=%d",
                created.id, created.user_id, created.pack_id, created.quantity, created.total_price,
            )
            await self.publisher.publish(created)
        return created

    @with_optimistic_retry()
    async def apply_payment_outcome(
        self,
        order_id: str,
        outcome: PaymentOutcome,
        method: PaymentMethod | None = None,
    ) -> Order:
        """
        Apply a payment result to an order. Idempotent: replaying an outcome
        the order already reflects changes nothing and mints nothing.

        SUCCESS  PENDING/PROCESSING/FAILED → PAID, CREATED → CONFIRMED, QR minted
        FAILURE  PENDING/PROCESSING → FAILED (order stays CREATED, retryable)
        PENDING  PENDING/FAILED → PROCESSING (a new attempt is in flight)

        PAID is never downgraded by a late FAILURE, and outcomes reaching a
        canceled order do not revive it. A SUCCESS captured after the order
        was canceled marks the payment REFUNDED so the refund owed is visible.
        """
        order = await self.load(order_id)
        now = self.clock()
        changes: dict = {}

        if order.fulfillment_status is FulfillmentStatus.CANCELED:
            if outcome is not PaymentOutcome.SUCCESS or order.payment_status in (
                PaymentStatus.PAID, PaymentStatus.REFUNDED,
            ):
                logger.warning("Payment %s for canceled order %s ignored", outcome.value, order_id)
                return order
            changes = {
                "payment_status": PaymentStatus.REFUNDED,
                "paid_at": order.paid_at or now,
                "updated_at": now,
            }
            if method is not None:
                changes["payment_method"] = method
            updated = await self.store.update_order_fields(order.id, order.version_id, changes)
            logger.warning(
                "Payment captured for canceled order %s; marked REFUNDED, refund owed", order_id
            )
            await self.publisher.publish(updated)
            return updated


        if outcome is PaymentOutcome.SUCCESS:
            if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
                return order
            state_machine.check_transition(order.fulfillment_status, FulfillmentStatus.CONFIRMED)
            issued = self.codec.issue(order.id, order.user_id, order.business_id, self.qr_ttl_seconds)
            changes = {
                "payment_status": PaymentStatus.PAID,
                "paid_at": order.paid_at or now,
                "fulfillment_status": FulfillmentStatus.CONFIRMED,
                "confirmed_at": now,
                "qr_token": issued.token,
                "qr_expires_at": issued.expires_at,
            }
        elif outcome is PaymentOutcome.FAILURE:
            if order.payment_status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                changes = {"payment_status": PaymentStatus.FAILED}
            else:
                if order.payment_status is PaymentStatus.PAID:
                    logger.warning("Late payment failure for paid order %s ignored", order_id)
                return order
        else:
            if order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                changes = {"payment_status": PaymentStatus.PROCESSING}
            else:
                return order

        if method is not None:
            changes["payment_method"] = method
        changes["updated_at"] = now

        updated = await self.store.update_order_fields(order.id, order.version_id, changes)
        logger.info(
            "Order %s payment %s → %s (fulfillment %s)",
            order_id, order.payment_status.value, updated.payment_status.value,
            updated.fulfillment_status.value,
        )
        await self.publisher.publish(updated)
        return updated

    @with_optimistic_retry()
    async def cancel(self, ctx: SessionContext, order_id: str, reason: str = "") -> Order:
        """
        Cancel an order that has not been fulfilled and give its units back
        to the pack in the same unit of work. A paid order loses its QR token
        and its payment is marked REFUNDED.

        Raises:
            AlreadyCanceled, AlreadyFulfilled, NotAuthorized, OrderNotFound
        """
        order = await self.load(order_id)
        self._authorize(ctx, order)

        if order.fulfillment_status is FulfillmentStatus.CANCELED:
            raise AlreadyCanceled(f"Order '{order_id}' is already canceled.")
        if order.redeemed_at is not None or order.is_terminal:
            raise AlreadyFulfilled(f"Order '{order_id}' was already fulfilled.")
        state_machine.check_transition(order.fulfillment_status, FulfillmentStatus.CANCELED)

        now = self.clock()
        changes = {
            "fulfillment_status": FulfillmentStatus.CANCELED,
            "canceled_at": now,
            "cancellation_reason": reason or None,
            "qr_token": None,
            "qr_expires_at": None,
            "updated_at": now,
        }
        if order.payment_status is PaymentStatus.PAID:
            changes["payment_status"] = PaymentStatus.REFUNDED

        updated = await self.store.update_order_fields(
            order.id, order.version_id, changes, restock=order.quantity
        )
        logger.info(
            "Order %s canceled by %s (%s); %d unit(s) returned to pack %s",
            order_id, ctx.user_id, reason or "no reason", order.quantity, order.pack_id,
        )
        await self.publisher.publish(updated)
        return updated

    @with_optimistic_retry()
    async def advance(self, ctx: SessionContext, order_id: str, to: FulfillmentStatus) -> Order:
        """
        Business moves an order one step forward: CONFIRMED → PREPARING or
        PREPARING → READY. Anything else raises InvalidTransition and leaves
        the order untouched.
        """
        order = await self.load(order_id)
        if not (ctx.is_system or (ctx.is_business and ctx.business_id == order.business_id)):
            raise NotAuthorized("Only the owning business can advance this order.")

        state_machine.check_advance(order.fulfillment_status, to)

        now = self.clock()
        changes = {"fulfillment_status": to, "updated_at": now}
        if to is FulfillmentStatus.PREPARING:
            changes["preparing_at"] = now
        else:
            changes["ready_at"] = now

        updated = await self.store.update_order_fields(order.id, order.version_id, changes)
        logger.info("Order %s: %s → %s", order_id, order.fulfillment_status.value, to.value)
        await self.publisher.publish(updated)
        return updated

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def load(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order '{order_id}' not found.")
        return order

    @staticmethod
    def _authorize(ctx: SessionContext, order: Order) -> None:
        if ctx.is_system:
            return
        if ctx.is_business and ctx.business_id == order.business_id:
            return
        if ctx.role is Role.USER and ctx.user_id == order.user_id:
            return
        raise NotAuthorized(f"Not authorized for order '{order.id}'.")
