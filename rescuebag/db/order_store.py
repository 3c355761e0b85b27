"""
RescueBag — Order store contract and in-memory implementation

The store is the only place order and pack state lives. Two implementations
share this contract and are picked by dependency injection:
  - InMemoryOrderStore: per-process fake, asyncio locks per pack and per order
  - SqlOrderStore (db/sql_store.py): PostgreSQL with conditional UPDATEs

Contract:
  - create_order_atomic: stock check + decrement + insert happen as one unit
  - update_order_fields: compare-and-swap on version_id; raises StaleDataError
    when the caller's snapshot is outdated; optional restock is applied in the
    same unit of work
  - record_payment_attempt: returns False for a replay of an already recorded
    (provider_reference, outcome) pair
  - forget_payment_attempt: drops that record again when the outcome could
    not be applied, so a redelivery is processed instead of deduplicated
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

from rescuebag.core.errors import InsufficientStock, OrderNotFound, PackInactive, PackNotFound
from rescuebag.core.optimistic_lock import StaleDataError
from rescuebag.models.order import FulfillmentStatus
from rescuebag.schemas.order import Order, Pack, PaymentAttempt

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    async def save_pack(self, pack: Pack) -> Pack: ...

    async def get_pack(self, pack_id: str) -> Pack | None: ...

    async def decrement_pack_stock(self, pack_id: str, quantity: int) -> Pack: ...

    async def increment_pack_stock(self, pack_id: str, quantity: int) -> Pack: ...

    async def create_order_atomic(self, order: Order) -> Order: ...

    async def get_order(self, order_id: str) -> Order | None: ...

    async def find_order_by_idempotency_key(self, user_id: str, key: str) -> Order | None: ...

    async def list_orders(
        self,
        user_id: str | None = None,
        business_id: str | None = None,
        status: FulfillmentStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]: ...

    async def update_order_fields(
        self,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
        restock: int = 0,
    ) -> Order: ...

    async def record_payment_attempt(self, attempt: PaymentAttempt) -> bool: ...

    async def forget_payment_attempt(self, attempt: PaymentAttempt) -> None: ...

    async def list_payment_attempts(self, order_id: str) -> list[PaymentAttempt]: ...

    async def ping(self) -> None: ...


class InMemoryOrderStore:
    """
    Process-local store. Pack mutations are serialized per pack and order
    mutations per order; every read yields to the event loop first so
    concurrent callers genuinely interleave between read and write.
    """

    def __init__(self):
        self._packs: dict[str, Pack] = {}
        self._orders: dict[str, Order] = {}
        self._attempts: dict[tuple[str, str], PaymentAttempt] = {}
        self._idempotency: dict[tuple[str, str], str] = {}
        self._pack_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._order_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Packs ─────────────────────────────────────────────────────────────────

    async def save_pack(self, pack: Pack) -> Pack:
        async with self._pack_locks[pack.id]:
            self._packs[pack.id] = pack.model_copy()
        return pack.model_copy()

    async def get_pack(self, pack_id: str) -> Pack | None:
        await asyncio.sleep(0)
        pack = self._packs.get(pack_id)
        return pack.model_copy() if pack else None

    async def decrement_pack_stock(self, pack_id: str, quantity: int) -> Pack:
        async with self._pack_locks[pack_id]:
            return self._decrement_locked(pack_id, quantity)

    async def increment_pack_stock(self, pack_id: str, quantity: int) -> Pack:
        async with self._pack_locks[pack_id]:
            return self._increment_locked(pack_id, quantity)

    def _decrement_locked(self, pack_id: str, quantity: int) -> Pack:
        pack = self._packs.get(pack_id)
        if pack is None:
            raise PackNotFound(f"Pack '{pack_id}' not found.")
        if not pack.active:
            raise PackInactive(f"Pack '{pack_id}' is not available.")
        if pack.stock < quantity:
            raise InsufficientStock(
                f"Insufficient stock for pack '{pack_id}': "
                f"requested={quantity}, available={pack.stock}"
            )
        updated = pack.model_copy(update={"stock": pack.stock - quantity, "version_id": pack.version_id + 1})
        self._packs[pack_id] = updated
        return updated.model_copy()

    def _increment_locked(self, pack_id: str, quantity: int) -> Pack:
        pack = self._packs.get(pack_id)
        if pack is None:
            raise PackNotFound(f"Pack '{pack_id}' not found.")
        updated = pack.model_copy(update={"stock": pack.stock + quantity, "version_id": pack.version_id + 1})
        self._packs[pack_id] = updated
        return updated.model_copy()

    # ── Orders ────────────────────────────────────────────────────────────────

    async def create_order_atomic(self, order: Order) -> Order:
        async with self._pack_locks[order.pack_id]:
            await asyncio.sleep(0)
            if order.idempotency_key:
                existing_id = self._idempotency.get((order.user_id, order.idempotency_key))
                if existing_id is not None:
                    return self._orders[existing_id].model_copy()
            self._decrement_locked(order.pack_id, order.quantity)
            self._orders[order.id] = order.model_copy()
            if order.idempotency_key:
                self._idempotency[(order.user_id, order.idempotency_key)] = order.id
        return order.model_copy()

    async def get_order(self, order_id: str) -> Order | None:
        await asyncio.sleep(0)
        order = self._orders.get(order_id)
        return order.model_copy() if order else None

    async def find_order_by_idempotency_key(self, user_id: str, key: str) -> Order | None:
        order_id = self._idempotency.get((user_id, key))
        return await self.get_order(order_id) if order_id else None

    async def list_orders(
        self,
        user_id: str | None = None,
        business_id: str | None = None,
        status: FulfillmentStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        matches = [
            o for o in self._orders.values()
            if (user_id is None or o.user_id == user_id)
            and (business_id is None or o.business_id == business_id)
            and (status is None or o.fulfillment_status == status)
        ]
        matches.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy() for o in matches[offset:offset + limit]], len(matches)

    async def update_order_fields(
        self,
        order_id: str,
        expected_version: int,
        changes: dict[str, Any],
        restock: int = 0,
    ) -> Order:
        async with self._order_locks[order_id]:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFound(f"Order '{order_id}' not found.")
            if current.version_id != expected_version:
                raise StaleDataError(
                    f"Order '{order_id}' version changed: expected={expected_version}, "
                    f"actual={current.version_id}"
                )
            updated = current.model_copy(update={**changes, "version_id": current.version_id + 1})
            if restock:
                async with self._pack_locks[current.pack_id]:
                    self._increment_locked(current.pack_id, restock)
            self._orders[order_id] = updated
        return updated.model_copy()

    # ── Payment attempts ──────────────────────────────────────────────────────

    async def record_payment_attempt(self, attempt: PaymentAttempt) -> bool:
        key = (attempt.provider_reference, attempt.outcome.value)
        if key in self._attempts:
            return False
        self._attempts[key] = attempt.model_copy()
        return True

    async def forget_payment_attempt(self, attempt: PaymentAttempt) -> None:
        key = (attempt.provider_reference, attempt.outcome.value)
        stored = self._attempts.get(key)
        if stored is not None and stored.id == attempt.id:
            del self._attempts[key]

    async def list_payment_attempts(self, order_id: str) -> list[PaymentAttempt]:
        attempts = [a for a in self._attempts.values() if a.order_id == order_id]
        attempts.sort(key=lambda a: a.received_at)
        return [a.model_copy() for a in attempts]

    async def ping(self) -> None:
        return None
