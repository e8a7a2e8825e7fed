"""Celery application for deferred workflow notifications."""

from celery import Celery

from budgetflow.config import settings

celery_app = Celery(
    "budgetflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "budgetflow.tasks.stage_notifications",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    # A notification is redelivered if its worker dies before the POST
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
)
