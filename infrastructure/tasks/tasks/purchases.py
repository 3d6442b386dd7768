"""
Celery tasks for purchase compensation workflows: deferred fan-out, view
reconciliation and stale pending expiry.
"""
from __future__ import annotations

import asyncio

from celery import shared_task

from application.services.enrollment_service import EnrollmentFanout, EnrollmentSweeper
from application.services.reconciliation_service import ReconciliationEngine
from core.alerts import operator_alert
from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.database import task_session_factory
from infrastructure.unit_of_work import uow_factory_for
from ..utils.base_task import BaseTask


logger = get_logger(__name__)

_fanout_cfg = payment_settings.fanout


def _fanout(uow_factory) -> EnrollmentFanout:
    # Each task run is already a retry; Celery owns the backoff from here
    return EnrollmentFanout(uow_factory, inline_attempts=1)


async def _run_deferred_fanout(purchase_id: int, action: str) -> str:
    async with task_session_factory() as session_factory:
        fanout = _fanout(uow_factory_for(session_factory))
        status = await fanout.run_deferred(purchase_id, action)
        return status.value


async def _run_sweep(batch_size: int) -> dict:
    async with task_session_factory() as session_factory:
        uow_factory = uow_factory_for(session_factory)
        sweeper = EnrollmentSweeper(uow_factory, _fanout(uow_factory))
        return await sweeper.sweep(batch_size=batch_size)


async def _run_expiry(limit: int) -> int:
    async with task_session_factory() as session_factory:
        uow_factory = uow_factory_for(session_factory)
        engine = ReconciliationEngine(
            uow_factory,
            _fanout(uow_factory),
            pending_ttl_minutes=payment_settings.pending_ttl_minutes,
        )
        return await engine.expire_stale_pending(limit=limit)


@shared_task(
    name="purchases.retry_fanout",
    bind=True,
    base=BaseTask,
    max_retries=_fanout_cfg.deferred_retries,
    default_retry_delay=_fanout_cfg.deferred_countdown,
)
def task_retry_fanout(self, purchase_id: int, action: str):
    try:
        status = asyncio.run(_run_deferred_fanout(purchase_id, action))
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            operator_alert(
                "enrollment_fanout_exhausted",
                purchase_id=purchase_id,
                action=action,
                retries=self.request.retries,
                error=str(exc),
            )
            raise
        countdown = _fanout_cfg.deferred_countdown * (2 ** self.request.retries)
        logger.warning(
            "enrollment_fanout_retry_scheduled",
            purchase_id=purchase_id,
            action=action,
            retries=self.request.retries,
            countdown=countdown,
            error=str(exc),
        )
        raise self.retry(exc=exc, countdown=countdown)
    return {"purchase_id": purchase_id, "action": action, "status": status}


@shared_task(name="purchases.reconcile_enrollments", bind=True, base=BaseTask)
def task_reconcile_enrollments(self, batch_size: int = 200):
    stats = asyncio.run(_run_sweep(batch_size))
    if stats.get("granted") or stats.get("revoked"):
        logger.warning("enrollment_views_repaired", **stats)
    return stats


@shared_task(name="purchases.expire_stale_pending", bind=True, base=BaseTask)
def task_expire_stale_pending(self, limit: int = 500):
    expired = asyncio.run(_run_expiry(limit))
    return {"expired": expired}
