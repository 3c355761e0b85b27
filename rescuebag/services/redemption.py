"""
RescueBag — QR redemption at the counter

A business scans the customer's QR token. The token proves who the order
belongs to; the order row decides whether it can still be handed over.
Marking an order redeemed is a compare-and-swap on version_id, so of any
number of concurrent scans exactly one succeeds and the rest re-read the
order and fail with AlreadyRedeemed.
"""
import logging

from rescuebag.core.clock import Clock, utcnow
from rescuebag.core.errors import (
    AlreadyCanceled, AlreadyRedeemed, BusinessMismatch, NotReadyForPickup, OrderNotFound,
    QrExpired, QrTampered,
)
from rescuebag.core.optimistic_lock import with_optimistic_retry
from rescuebag.core.qr_token import QrClaims, QrTokenCodec
from rescuebag.db.order_store import OrderStore
from rescuebag.models.order import FulfillmentStatus
from rescuebag.schemas.order import Order
from rescuebag.services import state_machine
from rescuebag.services.order_events import NullOrderEventPublisher, OrderEventPublisher

logger = logging.getLogger(__name__)


class RedemptionVerifier:
    def __init__(
        self,
        store: OrderStore,
        codec: QrTokenCodec,
        clock: Clock = utcnow,
        requires_ready: bool = True,
        publisher: OrderEventPublisher | None = None,
    ):
        self.store = store
        self.codec = codec
        self.clock = clock
        self.redeemable = state_machine.redeemable_statuses(requires_ready)
        self.publisher = publisher or NullOrderEventPublisher()

    async def inspect(self, token: str, scanning_business_id: str) -> Order:
        """Validate a scan without consuming it. Raises exactly what redeem would."""
        _, order = await self._validate(token, scanning_business_id)
        return order

    @with_optimistic_retry()
    async def redeem(self, token: str, scanning_business_id: str) -> Order:
        """
        Consume a QR token and hand the order over.

        Raises:
            QrMalformed, QrTampered, QrExpired, OrderNotFound, BusinessMismatch,
            NotReadyForPickup, AlreadyRedeemed, AlreadyCanceled
        """
        _, order = await self._validate(token, scanning_business_id)

        now = self.clock()
        target = state_machine.redemption_target(order.fulfillment_method)
        updated = await self.store.update_order_fields(
            order.id,
            order.version_id,
            {"redeemed_at": now, "fulfillment_status": target, "updated_at": now},
        )
        logger.info("Order %s redeemed by business %s (%s)", order.id, scanning_business_id, target.value)
        await self.publisher.publish(updated)
        return updated

    async def _validate(self, token: str, scanning_business_id: str) -> tuple[QrClaims, Order]:
        try:
            claims = self.codec.verify(token)
        except (QrTampered, QrExpired) as exc:
            logger.warning("Rejected QR scan by business %s: %s", scanning_business_id, exc.code)
            raise

        order = await self.store.get_order(claims.order_id)
        if order is None:
            raise OrderNotFound(f"Order '{claims.order_id}' not found.")

        if claims.business_id != order.business_id or order.business_id != scanning_business_id:
            logger.warning(
                "Business %s scanned QR for order %s of business %s",
                scanning_business_id, order.id, order.business_id,
            )
            raise BusinessMismatch("This order belongs to another business.")

        if order.redeemed_at is not None:
            raise AlreadyRedeemed(f"Order '{order.id}' was already redeemed.")
        if order.fulfillment_status is FulfillmentStatus.CANCELED:
            raise AlreadyCanceled(f"Order '{order.id}' was canceled.")
        if order.fulfillment_status not in self.redeemable:
            raise NotReadyForPickup(
                f"Order '{order.id}' is {order.fulfillment_status.value}, not ready for pickup."
            )
        return claims, order
