"""
RescueBag — Service wiring

Builds the object graph shared by the API process and the Celery worker.
Storage and notification backends are chosen from settings unless a caller
injects its own (tests use InMemoryOrderStore and a fake provider).
"""
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as aioredis

from rescuebag.core.clock import Clock, utcnow
from rescuebag.core.config import Settings
from rescuebag.core.qr_token import QrTokenCodec
from rescuebag.core.redis_client import get_redis
from rescuebag.db.order_store import InMemoryOrderStore, OrderStore
from rescuebag.services.order_events import (
    NullOrderEventPublisher, PollingOrderWatcher, RedisOrderEventPublisher, RedisOrderWatcher,
)
from rescuebag.services.order_service import OrderService
from rescuebag.services.payment_provider import HttpPaymentProvider, PaymentProvider
from rescuebag.services.payment_reconciler import PaymentReconciler
from rescuebag.services.redemption import RedemptionVerifier


@dataclass
class Services:
    settings: Settings
    store: OrderStore
    orders: OrderService
    redemption: RedemptionVerifier
    payments: PaymentReconciler


def build_store(settings: Settings) -> OrderStore:
    if settings.STORE_BACKEND == "memory":
        return InMemoryOrderStore()
    from rescuebag.db.database import AsyncSessionLocal
    from rescuebag.db.sql_store import SqlOrderStore
    return SqlOrderStore(AsyncSessionLocal)


def build_services(
    settings: Settings,
    store: OrderStore | None = None,
    provider: PaymentProvider | None = None,
    clock: Clock = utcnow,
    redis_factory: Callable[[], aioredis.Redis] = get_redis,
) -> Services:
    store = store or build_store(settings)
    codec = QrTokenCodec(settings.QR_SECRET_KEY, settings.QR_ALGORITHM, clock=clock)

    if settings.WATCH_BACKEND == "redis":
        publisher = RedisOrderEventPublisher(redis_factory)
        watcher = RedisOrderWatcher(store, redis_factory)
    else:
        publisher = NullOrderEventPublisher()
        watcher = PollingOrderWatcher(store, interval_seconds=settings.WATCH_POLL_INTERVAL_SECONDS)

    orders = OrderService(
        store,
        codec,
        qr_ttl_seconds=settings.QR_TOKEN_TTL_SECONDS,
        currency=settings.PAYMENT_CURRENCY,
        clock=clock,
        publisher=publisher,
        watcher=watcher,
    )
    redemption = RedemptionVerifier(
        store,
        codec,
        clock=clock,
        requires_ready=settings.REDEMPTION_REQUIRES_READY,
        publisher=publisher,
    )
    payments = PaymentReconciler(
        orders,
        store,
        provider or HttpPaymentProvider(settings.PAYMENT_PROVIDER_URL, settings.PAYMENT_HTTP_TIMEOUT_SECONDS),
        clock=clock,
        webhook_secret=settings.PAYMENT_WEBHOOK_SECRET,
    )
    return Services(settings=settings, store=store, orders=orders, redemption=redemption, payments=payments)
