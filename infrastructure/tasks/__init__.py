"""Celery wiring for purchase compensation jobs.

The application layer only sees TaskDispatcher (a FanoutScheduler); the
worker is started with ``celery -A infrastructure.tasks worker``.
"""
from .config.celery import celery_app
from .utils.dispatcher import TaskDispatcher

__all__ = ["celery_app", "TaskDispatcher"]
