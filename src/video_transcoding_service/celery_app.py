"""Celery application factory for transcoding tasks."""

from __future__ import annotations

from typing import Any

from celery import Celery
from celery.signals import worker_process_init

from .config import settings
from .logging_setup import configure_logging


def create_celery() -> Celery:
    """Instantiate and configure the Celery app.

    Late acks plus the broker visibility timeout form the delivery lease: a task
    whose worker dies is redelivered once the timeout passes.
    """

    app = Celery("video_transcoding_service", include=["video_transcoding_service.tasks"])
    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,
        task_default_queue=settings.celery_task_queue,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.queue_concurrency,
        worker_max_tasks_per_child=50,
        broker_transport_options={
            "visibility_timeout": settings.celery_visibility_timeout_seconds,
            "queue_order_strategy": "priority",
        },
        broker_connection_retry_on_startup=True,
        result_expires=int(settings.queue_completed_max_age_seconds),
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
    )
    return app


@worker_process_init.connect
def _configure_worker_logging(**_: Any) -> None:
    configure_logging()


celery_app = create_celery()
