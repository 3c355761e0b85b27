"""
RescueBag — Celery tasks (payment status polling)

A started payment is polled every PAYMENT_POLL_INTERVAL_SECONDS until the
provider reports SUCCESS or FAILURE, the order is settled through a webhook,
or PAYMENT_POLL_TIMEOUT_SECONDS have passed. Each run does one provider call
and re-schedules itself, so no worker sits asleep on a pending payment.
"""
import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from rescuebag.core.config import get_settings
from rescuebag.core.errors import OrderError
from rescuebag.db.sql_store import SqlOrderStore
from rescuebag.models.order import PaymentMethod
from rescuebag.services.container import build_services
from rescuebag.tasks.celery_app import celery_app

settings = get_settings()
logger = logging.getLogger(__name__)


async def _poll_once(order_id: str, provider_reference: str, method: str) -> bool:
    # asyncio.run gives every task run a fresh loop; pooled asyncpg
    # connections cannot outlive it.
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        store = SqlOrderStore(async_sessionmaker(engine, expire_on_commit=False))
        services = build_services(settings, store=store)
        return await services.payments.poll_tick(order_id, provider_reference, PaymentMethod(method))
    finally:
        await engine.dispose()


@celery_app.task(
    name="poll_payment_status",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    acks_late=True,
)
def poll_payment_status(self, order_id: str, provider_reference: str, method: str, deadline: float):
    """Poll the provider once and re-schedule while the payment is open."""
    if time.time() >= deadline:
        logger.error(
            "Payment %s for order %s still pending after %ss; polling stopped",
            provider_reference, order_id, settings.PAYMENT_POLL_TIMEOUT_SECONDS,
        )
        return "timeout"

    try:
        pending = asyncio.run(_poll_once(order_id, provider_reference, method))
    except OrderError as exc:
        if not exc.retryable:
            logger.error(
                "Polling payment %s for order %s stopped: %s (%s)",
                provider_reference, order_id, exc.code, exc,
            )
            return "failed"
        logger.warning("Polling payment %s for order %s failed: %s", provider_reference, order_id, exc)
        raise self.retry(exc=exc)

    if not pending:
        logger.info("Payment %s for order %s settled", provider_reference, order_id)
        return "settled"

    self.apply_async(
        args=(order_id, provider_reference, method, deadline),
        countdown=settings.PAYMENT_POLL_INTERVAL_SECONDS,
    )
    return "pending"


def schedule_payment_poll(order_id: str, provider_reference: str, method: PaymentMethod) -> None:
    deadline = time.time() + settings.PAYMENT_POLL_TIMEOUT_SECONDS
    poll_payment_status.apply_async(
        args=(order_id, provider_reference, method.value, deadline),
        countdown=settings.PAYMENT_POLL_INTERVAL_SECONDS,
    )
