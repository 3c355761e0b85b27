"""
RescueBag — Celery application

Uses Redis as both broker and result backend. Runs the payment status
poller; workers run separately from the API process.
"""
from celery import Celery

from rescuebag.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "rescuebag",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["rescuebag.tasks.payment_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
)
