"""Celery application configuration"""
from __future__ import annotations

import os

from celery import Celery
from celery.signals import setup_logging
from kombu import Queue

from core.config import settings
from core.logging_config import configure_logging, get_logger
from .beat import CELERY_BEAT_SCHEDULE


# Importing this package registers the purchases.* tasks.
CELERY_IMPORTS = ("infrastructure.tasks.tasks",)


celery_app = Celery("course_purchases")

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Fan-out steps are idempotent, so a redelivered message is harmless.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_queues=(
        Queue("high"),
        Queue("default"),
        Queue("low"),
    ),
    # Enrollment fan-out is buyer-visible; sweeps can wait.
    task_routes={
        "purchases.retry_fanout": {"queue": "high"},
        "purchases.reconcile_enrollments": {"queue": "low"},
        "purchases.expire_stale_pending": {"queue": "low"},
    },
    # A sweep batch must finish well inside the 15 minute beat interval.
    task_soft_time_limit=300,
    task_time_limit=360,
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=CELERY_IMPORTS,
)


logger = get_logger(__name__)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    # Keep Celery from installing its own root handler; workers log through structlog too.
    configure_logging()


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info("celery_configured", broker=sender.conf.broker_url, queues=[q.name for q in sender.conf.task_queues])
