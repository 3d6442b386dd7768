"""
选课视图扇出（application/services）

账本提交之后，把结果同步到两个反规范化视图：买家已选课程集合、课程花名册。
两个视图各自是独立聚合，分别在自己的 UoW 中提交；集合语义保证重复执行无副作用。
失败时先行内退避重试，仍失败则交给后台任务，最终由定期巡检兜底。
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from application.ports.task_scheduler import FanoutScheduler
from core.alerts import operator_alert
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.purchase.entity import Purchase, PurchaseStatus


logger = get_logger(__name__)


class FanoutAction(str, Enum):
    GRANT = "grant"
    REVOKE = "revoke"


class FanoutStatus(str, Enum):
    APPLIED = "applied"
    DEFERRED = "deferred"     # 已交给后台任务重试
    STRANDED = "stranded"     # 后台任务也未能排队，等待巡检修复
    SKIPPED = "skipped"       # 账本状态已不需要该动作


# 动作只有在账本处于对应状态时才有意义
_REQUIRED_STATUS = {
    FanoutAction.GRANT: PurchaseStatus.COMPLETED,
    FanoutAction.REVOKE: PurchaseStatus.REFUNDED,
}


class EnrollmentFanout:
    """Saga 式扇出：每一步幂等，可安全重放"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        scheduler: Optional[FanoutScheduler] = None,
        inline_attempts: int = 3,
        base_backoff: float = 0.1,
        max_backoff: float = 1.0,
        deferred_countdown: int = 30,
    ) -> None:
        self._uow_factory = uow_factory
        self._scheduler = scheduler
        self._inline_attempts = max(1, int(inline_attempts))
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff
        self._deferred_countdown = deferred_countdown

    async def grant(self, purchase: Purchase) -> FanoutStatus:
        return await self._run(FanoutAction.GRANT, purchase)

    async def revoke(self, purchase: Purchase) -> FanoutStatus:
        return await self._run(FanoutAction.REVOKE, purchase)

    async def apply_once(self, action: FanoutAction, purchase: Purchase) -> None:
        """执行一次完整扇出（两个视图各一个事务），异常直接抛出"""
        at = purchase.completed_at or datetime.now(timezone.utc)
        if action == FanoutAction.REVOKE and await self.has_newer_grant(purchase):
            logger.info(
                "enrollment_revoke_superseded",
                purchase_id=purchase.id,
                buyer_id=purchase.buyer_id,
                course_id=purchase.course_id,
            )
            return
        async with self._uow_factory() as uow:
            if action == FanoutAction.GRANT:
                await uow.buyer_directory.add_enrollment(purchase.buyer_id, purchase.course_id, at)
            else:
                await uow.buyer_directory.remove_enrollment(purchase.buyer_id, purchase.course_id)
        async with self._uow_factory() as uow:
            if action == FanoutAction.GRANT:
                await uow.course_roster.add_student(purchase.course_id, purchase.buyer_id)
            else:
                await uow.course_roster.remove_student(purchase.course_id, purchase.buyer_id)

    async def has_newer_grant(self, purchase: Purchase) -> bool:
        # 退款后同一买家重新购买成功，则视图成员资格属于新的购买
        async with self._uow_factory(readonly=True) as uow:
            current = await uow.purchase_repository.get_completed(purchase.buyer_id, purchase.course_id)
        return current is not None and current.id != purchase.id

    async def _run(self, action: FanoutAction, purchase: Purchase) -> FanoutStatus:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._inline_attempts),
                wait=wait_exponential(multiplier=self._base_backoff, max=self._max_backoff),
                reraise=True,
            ):
                with attempt:
                    await self.apply_once(action, purchase)
        except Exception as exc:
            logger.warning(
                "enrollment_fanout_inline_failed",
                purchase_id=purchase.id,
                action=action.value,
                attempts=self._inline_attempts,
                error=str(exc),
            )
            return self._defer(action, purchase, exc)

        logger.info(
            "enrollment_fanout_applied",
            purchase_id=purchase.id,
            buyer_id=purchase.buyer_id,
            course_id=purchase.course_id,
            action=action.value,
        )
        return FanoutStatus.APPLIED

    def _defer(self, action: FanoutAction, purchase: Purchase, cause: Exception) -> FanoutStatus:
        if self._scheduler is None:
            operator_alert(
                "enrollment_fanout_stranded",
                purchase_id=purchase.id,
                action=action.value,
                error=str(cause),
                reason="no_scheduler",
            )
            return FanoutStatus.STRANDED
        try:
            self._scheduler.schedule_fanout_retry(
                purchase.id, action.value, countdown=self._deferred_countdown
            )
        except Exception as exc:
            # 账本已提交，视图落后：交给巡检任务修复并通知运维
            operator_alert(
                "enrollment_fanout_stranded",
                purchase_id=purchase.id,
                action=action.value,
                error=str(cause),
                dispatch_error=str(exc),
            )
            return FanoutStatus.STRANDED
        logger.info(
            "enrollment_fanout_deferred",
            purchase_id=purchase.id,
            action=action.value,
            countdown=self._deferred_countdown,
        )
        return FanoutStatus.DEFERRED

    async def run_deferred(self, purchase_id: int, action: str) -> FanoutStatus:
        """后台任务入口：重新读取账本，确认动作仍然适用后执行一次"""
        fanout_action = FanoutAction(action)
        async with self._uow_factory(readonly=True) as uow:
            purchase = await uow.purchase_repository.get_by_id(purchase_id)
        if purchase is None:
            logger.warning("enrollment_fanout_purchase_missing", purchase_id=purchase_id, action=action)
            return FanoutStatus.SKIPPED
        if purchase.status != _REQUIRED_STATUS[fanout_action]:
            logger.info(
                "enrollment_fanout_skipped",
                purchase_id=purchase_id,
                action=action,
                status=purchase.status.value,
            )
            return FanoutStatus.SKIPPED
        await self.apply_once(fanout_action, purchase)
        logger.info("enrollment_fanout_applied", purchase_id=purchase_id, action=action, deferred=True)
        return FanoutStatus.APPLIED


class EnrollmentSweeper:
    """定期巡检：以账本为准修复两个视图的漂移"""

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], fanout: EnrollmentFanout) -> None:
        self._uow_factory = uow_factory
        self._fanout = fanout

    async def _in_sync(self, purchase: Purchase) -> bool:
        async with self._uow_factory(readonly=True) as uow:
            enrolled = await uow.buyer_directory.get_enrollment(purchase.buyer_id, purchase.course_id)
            rostered = await uow.course_roster.has_student(purchase.course_id, purchase.buyer_id)
        if purchase.status == PurchaseStatus.COMPLETED:
            return enrolled is not None and rostered
        if enrolled is None and not rostered:
            return True
        return await self._fanout.has_newer_grant(purchase)

    async def sweep(self, batch_size: int = 100) -> dict[str, int]:
        stats = {"checked": 0, "granted": 0, "revoked": 0, "errors": 0}
        for status, action, counter in (
            (PurchaseStatus.COMPLETED, FanoutAction.GRANT, "granted"),
            (PurchaseStatus.REFUNDED, FanoutAction.REVOKE, "revoked"),
        ):
            skip = 0
            while True:
                async with self._uow_factory(readonly=True) as uow:
                    batch = await uow.purchase_repository.list_by_status(status, skip=skip, limit=batch_size)
                if not batch:
                    break
                for purchase in batch:
                    stats["checked"] += 1
                    try:
                        if await self._in_sync(purchase):
                            continue
                        await self._fanout.apply_once(action, purchase)
                        stats[counter] += 1
                        logger.warning(
                            "enrollment_drift_repaired",
                            purchase_id=purchase.id,
                            buyer_id=purchase.buyer_id,
                            course_id=purchase.course_id,
                            action=action.value,
                        )
                    except Exception as exc:
                        stats["errors"] += 1
                        operator_alert(
                            "enrollment_drift_unrepaired",
                            purchase_id=purchase.id,
                            action=action.value,
                            error=str(exc),
                        )
                if len(batch) < batch_size:
                    break
                skip += batch_size
        logger.info("enrollment_sweep_finished", **stats)
        return stats
