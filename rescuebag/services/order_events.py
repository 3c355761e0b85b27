"""
RescueBag — Order change notifications and watch streams

Publishers push a snapshot of an order after every committed transition.
Watchers turn those changes into an async stream of Order snapshots:
  - RedisOrderWatcher:   subscribes to the order:{order_id} pub/sub channel
  - PollingOrderWatcher: re-reads the order from the store on a fixed interval
Both yield the current state first and stop after a terminal state.
Publishing failures MUST NOT affect order processing.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Protocol

import redis.asyncio as aioredis

from rescuebag.core.errors import OrderNotFound
from rescuebag.db.order_store import OrderStore
from rescuebag.schemas.order import Order

logger = logging.getLogger(__name__)

CHANNEL_TEMPLATE = "order:{order_id}"


def channel_for(order_id: str) -> str:
    return CHANNEL_TEMPLATE.format(order_id=order_id)


class OrderEventPublisher(Protocol):
    async def publish(self, order: Order) -> None: ...


class OrderWatcher(Protocol):
    def watch(self, order_id: str) -> AsyncIterator[Order]: ...


class NullOrderEventPublisher:
    async def publish(self, order: Order) -> None:
        return None


class RedisOrderEventPublisher:
    def __init__(self, redis_factory: Callable[[], aioredis.Redis]):
        self._redis_factory = redis_factory

    async def publish(self, order: Order) -> None:
        try:
            redis = self._redis_factory()
            await redis.publish(channel_for(order.id), order.model_dump_json())
        except Exception as exc:
            logger.warning("Order event for %s not published: %s", order.id, exc)


async def _current(store: OrderStore, order_id: str) -> Order:
    order = await store.get_order(order_id)
    if order is None:
        raise OrderNotFound(f"Order '{order_id}' not found.")
    return order


class PollingOrderWatcher:
    def __init__(
        self,
        store: OrderStore,
        interval_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._interval = interval_seconds
        self._sleep = sleep

    async def watch(self, order_id: str) -> AsyncIterator[Order]:
        order = await _current(self._store, order_id)
        yield order
        while not order.is_terminal:
            await self._sleep(self._interval)
            latest = await _current(self._store, order_id)
            if latest.version_id != order.version_id:
                order = latest
                yield order


class RedisOrderWatcher:
    def __init__(self, store: OrderStore, redis_factory: Callable[[], aioredis.Redis], timeout: float = 1.0):
        self._store = store
        self._redis_factory = redis_factory
        self._timeout = timeout

    async def watch(self, order_id: str) -> AsyncIterator[Order]:
        pubsub = self._redis_factory().pubsub()
        await pubsub.subscribe(channel_for(order_id))
        try:
            # Subscribe first, then read: a change committed in between is
            # either in the snapshot or in the channel.
            order = await _current(self._store, order_id)
            yield order
            while not order.is_terminal:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._timeout)
                if not message or message["type"] != "message":
                    continue
                try:
                    latest = Order.model_validate(json.loads(message["data"]))
                except ValueError:
                    logger.warning("Discarding unreadable event on %s", channel_for(order_id))
                    continue
                if latest.version_id > order.version_id:
                    order = latest
                    yield order
        finally:
            await pubsub.unsubscribe(channel_for(order_id))
            await pubsub.aclose()
