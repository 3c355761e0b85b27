"""
RescueBag — PostgreSQL order store

Atomicity without heavy row locks:
  - stock:  UPDATE packs SET stock = stock - :q WHERE id = :id AND active
            AND stock >= :q; zero rows means the reservation lost (never oversells)
  - orders: UPDATE orders ... WHERE id = :id AND version_id = :expected;
            zero rows raises StaleDataError and the caller retries
Each public method is one transaction: either every write lands or none does.
"""
import functools
import logging
from typing import Any

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rescuebag.core.errors import (
    InsufficientStock, OrderConflict, OrderNotFound, PackInactive, PackNotFound, StoreUnavailable,
)
from rescuebag.core.optimistic_lock import StaleDataError
from rescuebag.models.order import FulfillmentStatus, OrderRow, PackRow, PaymentAttemptRow
from rescuebag.schemas.order import Order, Pack, PaymentAttempt

logger = logging.getLogger(__name__)


def _translate_outages(func_):
    """Surface connection-level database failures as StoreUnavailable."""
    @functools.wraps(func_)
    async def wrapper(*args, **kwargs):
        try:
            return await func_(*args, **kwargs)
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.error("Order store unavailable in %s: %s", func_.__name__, exc)
            raise StoreUnavailable(f"Order store unavailable: {exc}") from exc
    return wrapper


class SqlOrderStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Packs ─────────────────────────────────────────────────────────────────

    @_translate_outages
    async def save_pack(self, pack: Pack) -> Pack:
        async with self._session_factory() as db:
            row = await db.get(PackRow, pack.id)
            if row is None:
                row = PackRow(**pack.model_dump())
                db.add(row)
            else:
                for field, value in pack.model_dump(exclude={"id"}).items():
                    setattr(row, field, value)
            await db.commit()
            await db.refresh(row)
            return Pack.model_validate(row)

    @_translate_outages
    async def get_pack(self, pack_id: str) -> Pack | None:
        async with self._session_factory() as db:
            row = await db.get(PackRow, pack_id)
            return Pack.model_validate(row) if row else None

    @_translate_outages
    async def decrement_pack_stock(self, pack_id: str, quantity: int) -> Pack:
        async with self._session_factory() as db:
            await self._decrement(db, pack_id, quantity)
            await db.commit()
            return Pack.model_validate(await db.get(PackRow, pack_id, populate_existing=True))

    @_translate_outages
    async def increment_pack_stock(self, pack_id: str, quantity: int) -> Pack:
        async with self._session_factory() as db:
            await self._increment(db, pack_id, quantity)
            await db.commit()
            return Pack.model_validate(await db.get(PackRow, pack_id, populate_existing=True))

    async def _decrement(self, db: AsyncSession, pack_id: str, quantity: int) -> None:
        result = await db.execute(
            text(
                "UPDATE packs SET stock = stock - :quantity, version_id = version_id + 1, "
                "updated_at = NOW() "
                "WHERE id = :pack_id AND active AND stock >= :quantity"
            ),
            {"quantity": quantity, "pack_id": pack_id},
        )
        if result.rowcount == 1:
            return

        await db.rollback()
        row = await db.get(PackRow, pack_id)
        if row is None:
            raise PackNotFound(f"Pack '{pack_id}' not found.")
        if not row.active:
            raise PackInactive(f"Pack '{pack_id}' is not available.")
        raise InsufficientStock(
            f"Insufficient stock for pack '{pack_id}': "
            f"requested={quantity}, available={row.stock}"
        )

    async def _increment(self, db: AsyncSession, pack_id: str, quantity: int) -> None:
        result = await db.execute(
            text(
                "UPDATE packs SET stock = stock + :quantity, version_id = version_id + 1, "
                "updated_at = NOW() WHERE id = :pack_id"
            ),
            {"quantity": quantity, "pack_id": pack_id},
        )
        if result.rowcount == 0:
            raise PackNotFound(f"Pack '{pack_id}' not found.")

    # ── Orders ────────────────────────────────────────────────────────────────

    @_translate_outages
    async def create_order_atomic(self, order: Order) -> Order:
        if order.idempotency_key:
            existing = await self.find_order_by_idempotency_key(order.user_id, order.idempotency_key)
            if existing is not None:
                return existing

        async with self._session_factory() as db:
            await self._decrement(db, order.pack_id, order.quantity)
            db.add(OrderRow(**order.model_dump()))
            try:
                await db.commit()
            except IntegrityError as exc:
                # Same (user_id, idempotency_key) committed concurrently; our
                # decrement is rolled back together with the insert.
                await db.rollback()
                existing = None
                if order.idempotency_key:
                    existing = await self.find_order_by_idempotency_key(
                        order.user_id, order.idempotency_key
                    )
                if existing is None:
                    logger.error("Order %s rejected by a database constraint: %s", order.id, exc.orig)
                    raise OrderConflict(f"Order '{order.id}' conflicts with stored data.") from exc
                return existing
        return order.model_copy()

    @_translate_outages
    async def get_order(self, order_id: str) -> Order | None:
        async with self._session_factory() as db:
            row = await db.get(OrderRow, order_id)
            return Order.model_validate(row) if row else None

    @_translate_outages
    async def find_order_by_idempotency_key(self, user_id: str, key: str) -> Order | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderRow).where(OrderRow.user_id == user_id, OrderRow.idempotency_key == key)
            )
            row = result.scalar_one_or_none()
            return Order.model_validate(row) if row else None

    @_translate_outages
    async def list_orders(
        self,
        user_id: str | None = None,
        business_id: str | None = None,
        status: FulfillmentStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        query = select(OrderRow)
        if user_id is not None:
            query = query.where(OrderRow.user_id == user_id)
        if business_id is not None:
            query = query.where(OrderRow.business_id == business_id)
        if status is not None:
            query = query.where(OrderRow.fulfillment_status == status)

        async with self._session_factory() as db:
            total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
            result = await db.execute(
                query.order_by(OrderRow.created_at.desc()).offset(offset).limit(limit)
            )
            return [Order.model_validate(r) for r in result.scalars().all()], total

    @_translate_outages
    async def update_order_fields(
        self,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
        restock: int = 0,
    ) -> Order:
        async with self._session_factory() as db:
            result = await db.execute(
                update(OrderRow)
                .where(OrderRow.id == order_id, OrderRow.version_id == expected_version)
                .values(**changes, version_id=OrderRow.version_id + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                if await db.get(OrderRow, order_id) is None:
                    raise OrderNotFound(f"Order '{order_id}' not found.")
                raise StaleDataError(
                    f"Optimistic lock conflict: order '{order_id}' changed concurrently."
                )

            if restock:
                row = await db.get(OrderRow, order_id)
                await self._increment(db, row.pack_id, restock)

            await db.commit()
            row = await db.get(OrderRow, order_id, populate_existing=True)
            return Order.model_validate(row)

    # ── Payment attempts ──────────────────────────────────────────────────────

    @_translate_outages
    async def record_payment_attempt(self, attempt: PaymentAttempt) -> bool:
        async with self._session_factory() as db:
            db.add(PaymentAttemptRow(**attempt.model_dump()))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    @_translate_outages
    async def forget_payment_attempt(self, attempt: PaymentAttempt) -> None:
        async with self._session_factory() as db:
            await db.execute(
                delete(PaymentAttemptRow).where(PaymentAttemptRow.id == attempt.id)
            )
            await db.commit()

    @_translate_outages
    async def list_payment_attempts(self, order_id: str) -> list[PaymentAttempt]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(PaymentAttemptRow)
                .where(PaymentAttemptRow.order_id == order_id)
                .order_by(PaymentAttemptRow.received_at)
            )
            return [PaymentAttempt.model_validate(r) for r in result.scalars().all()]

    @_translate_outages
    async def ping(self) -> None:
        async with self._session_factory() as db:
            await db.execute(text("SELECT 1"))
