"""
RescueBag — FastAPI application entrypoint
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from rescuebag.api import health, orders, packs, payments
from rescuebag.api.deps import PollScheduler
from rescuebag.api.errors import order_error_handler
from rescuebag.core.clock import Clock, utcnow
from rescuebag.core.config import Settings, get_settings
from rescuebag.core.errors import OrderError
from rescuebag.core.redis_client import close_redis, get_redis
from rescuebag.db.order_store import OrderStore
from rescuebag.middleware.auth import SessionAuthMiddleware
from rescuebag.middleware.idempotency import IdempotencyMiddleware
from rescuebag.services.container import build_services
from rescuebag.services.payment_provider import PaymentProvider

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    store: OrderStore | None = None,
    provider: PaymentProvider | None = None,
    clock: Clock = utcnow,
    redis_factory: Callable[[], aioredis.Redis] = get_redis,
    poll_scheduler: PollScheduler | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_tables = store is None and settings.STORE_BACKEND == "sql"

    if poll_scheduler is None:
        from rescuebag.tasks.payment_tasks import schedule_payment_poll
        poll_scheduler = schedule_payment_poll

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_tables:
            from rescuebag.db.database import Base, engine
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables ready")
        yield
        await close_redis()

    app = FastAPI(
        title="RescueBag",
        description="Surplus food packs: orders, payments and QR pickup.",
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
    )
    app.state.services = build_services(
        settings, store=store, provider=provider, clock=clock, redis_factory=redis_factory
    )
    app.state.poll_scheduler = poll_scheduler
    app.state.redis_factory = redis_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Added last runs first: auth sets request.state.session for idempotency scoping
    if settings.IDEMPOTENCY_ENABLED:
        app.add_middleware(IdempotencyMiddleware, redis_factory=redis_factory)
    app.add_middleware(SessionAuthMiddleware)

    if settings.METRICS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    app.add_exception_handler(OrderError, order_error_handler)

    app.include_router(packs.router)
    app.include_router(orders.router)
    app.include_router(payments.router)
    app.include_router(health.router)

    @app.get("/")
    async def root():
        return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}

    return app


app = create_app()
