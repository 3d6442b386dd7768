"""
对账引擎（application/services）- 购买状态机核心

把已通过真实性校验的网关通知应用到账本，且对同一购买至多生效一次：
- 状态迁移使用条件更新（compare-and-set），并发下只有一个调用者胜出；
- 只有胜出者执行选课扇出，失败者把 completed 视为成功；
- 与账本冲突的通知不会覆盖已有记录，而是作为异常上报运维；
- 已过期（failed）的购买收到迟到支付时，原路退款并保持 failed。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from application.dtos.payments import PaymentNotification, RefundRequest
from application.ports.payment_gateway import PaymentGateway
from application.services.enrollment_service import EnrollmentFanout, FanoutStatus
from core.alerts import operator_alert
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    DuplicateCompletedPurchaseException,
    InternalInconsistencyException,
    NotAuthorizedException,
    PaymentGatewayError,
    PurchaseNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.purchase.entity import Purchase, PurchaseStatus, RefundRecord
from domain.purchase.events import PurchaseCompleted, PurchaseEvent, PurchaseFailed


logger = get_logger(__name__)


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    MARKED_FAILED = "marked_failed"
    IGNORED = "ignored"
    ANOMALY = "anomaly"
    # failed 购买收到迟到支付，已原路退回
    LATE_PAYMENT_REFUNDED = "late_payment_refunded"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    purchase: Optional[Purchase] = None
    event: Optional[PurchaseEvent] = None
    fanout: Optional[FanoutStatus] = None
    reason: Optional[str] = None

    @property
    def anomaly(self) -> bool:
        return self.outcome == ReconciliationOutcome.ANOMALY

    @property
    def fanout_deferred(self) -> bool:
        return self.fanout in (FanoutStatus.DEFERRED, FanoutStatus.STRANDED)


class ReconciliationEngine:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        fanout: EnrollmentFanout,
        *,
        gateway: Optional[PaymentGateway] = None,
        pending_ttl_minutes: int = 24 * 60,
    ) -> None:
        self._uow_factory = uow_factory
        self._fanout = fanout
        # 用于退回 failed 购买上迟到的支付；未配置时只能告警
        self._gateway = gateway
        self._pending_ttl = timedelta(minutes=pending_ttl_minutes)

    async def apply(
        self, notification: PaymentNotification, *, buyer_id: Optional[int] = None
    ) -> ReconciliationResult:
        """buyer_id 给定时（客户端确认路径）要求订单属于该买家"""
        if notification.kind == "completed":
            return await self._complete(notification, buyer_id)
        return await self._fail(notification)

    # ------------------------------------------------------------------
    # pending -> completed
    # ------------------------------------------------------------------

    async def _complete(self, n: PaymentNotification, buyer_id: Optional[int] = None) -> ReconciliationResult:
        if not n.payment_ref:
            raise DomainValidationException("缺少网关支付号", field="payment_ref")

        try:
            async with self._uow_factory() as uow:
                purchase = await uow.purchase_repository.get_by_gateway_order_ref(n.order_ref)
                if purchase is None:
                    raise PurchaseNotFoundException(n.order_ref)
                if buyer_id is not None and purchase.buyer_id != buyer_id:
                    raise NotAuthorizedException(purchase.id)

                settled = self._classify_settled(purchase, n)
                if settled is not None:
                    return settled

                if purchase.status == PurchaseStatus.PENDING:
                    if n.currency and n.currency.upper() != purchase.currency:
                        return self._anomaly(purchase, n, "currency_mismatch")

                    if n.settled_amount is not None and n.settled_amount != purchase.amount:
                        logger.warning(
                            "purchase_settled_amount_differs",
                            purchase_id=purchase.id,
                            expected=str(purchase.amount),
                            settled=str(n.settled_amount),
                        )

                    purchase.mark_completed(
                        n.payment_ref,
                        payment_method=n.payment_method,
                        settled_amount=n.settled_amount,
                    )
                    won = await uow.purchase_repository.compare_and_set(purchase, PurchaseStatus.PENDING)
        except DuplicateCompletedPurchaseException as exc:
            return self._anomaly(None, n, "duplicate_completed_purchase", details=exc.details)

        if purchase.status == PurchaseStatus.FAILED:
            # 网关调用不放在数据库事务里
            return await self._refund_late_payment(purchase, n)

        if not won:
            return await self._after_lost_race(n)

        event = PurchaseCompleted(
            purchase_id=purchase.id,
            buyer_id=purchase.buyer_id,
            course_id=purchase.course_id,
            provider=purchase.provider,
            payment_ref=purchase.gateway_payment_ref,
            amount=str(purchase.amount),
        )
        logger.info(
            "purchase_completed",
            purchase_id=purchase.id,
            buyer_id=purchase.buyer_id,
            course_id=purchase.course_id,
            payment_ref=purchase.gateway_payment_ref,
            provider=purchase.provider,
            event_id=n.event_id,
        )
        # 账本已提交：扇出失败只重试，不回滚
        fanout = await self._fanout.grant(purchase)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            purchase=purchase,
            event=event,
            fanout=fanout,
        )

    def _classify_settled(self, purchase: Purchase, n: PaymentNotification) -> Optional[ReconciliationResult]:
        """账本已离开 pending 时的判定；返回 None 表示可以继续处理"""
        if purchase.settled_with(n.payment_ref) or purchase.late_payment_refunded(n.payment_ref):
            logger.info(
                "purchase_confirmation_duplicate",
                purchase_id=purchase.id,
                payment_ref=n.payment_ref,
                status=purchase.status.value,
                event_id=n.event_id,
            )
            return ReconciliationResult(outcome=ReconciliationOutcome.ALREADY_APPLIED, purchase=purchase)
        if purchase.status in (PurchaseStatus.COMPLETED, PurchaseStatus.REFUNDED):
            return self._anomaly(purchase, n, "payment_ref_conflict")
        if purchase.status == PurchaseStatus.FAILED:
            if self._can_refund_late(purchase):
                return None
            return self._anomaly(purchase, n, "completion_for_failed_purchase")
        return None

    def _can_refund_late(self, purchase: Purchase) -> bool:
        return (
            self._gateway is not None
            and purchase.refund is None
            and purchase.provider == self._gateway.provider
        )

    async def _after_lost_race(self, n: PaymentNotification) -> ReconciliationResult:
        async with self._uow_factory(readonly=True) as uow:
            current = await uow.purchase_repository.get_by_gateway_order_ref(n.order_ref)
        if current is None:
            raise PurchaseNotFoundException(n.order_ref)
        settled = self._classify_settled(current, n)
        if settled is not None:
            return settled
        if current.status == PurchaseStatus.FAILED:
            # 输给了过期扫描
            return await self._refund_late_payment(current, n)
        # CAS 失败但仍为 pending，说明存储层行为不一致
        return self._anomaly(current, n, "compare_and_set_lost_while_pending")

    async def _refund_late_payment(self, purchase: Purchase, n: PaymentNotification) -> ReconciliationResult:
        """
        failed 购买上的真实支付：原路全额退款，购买保持 failed，不扇出

        网关失败时上抛（webhook 返回 502，网关会重投）；幂等键保证重投不会重复退款。
        """
        amount = n.settled_amount or purchase.amount
        req = RefundRequest(
            purchase_id=purchase.id,
            payment_ref=n.payment_ref,
            amount=amount,
            currency=purchase.currency,
            reason="late_payment_after_failure",
            idempotency_key=f"late-refund-{purchase.id}-{n.payment_ref}",
        )
        logger.warning(
            "late_payment_refund_request",
            purchase_id=purchase.id,
            payment_ref=n.payment_ref,
            failure_reason=purchase.failure_reason,
            amount=str(amount),
            idempotency_key=req.idempotency_key,
        )
        try:
            result = await self._gateway.refund(req)
        except PaymentGatewayError as exc:
            operator_alert(
                "late_payment_refund_failed",
                purchase_id=purchase.id,
                order_ref=n.order_ref,
                payment_ref=n.payment_ref,
                provider=n.provider,
                error=str(exc),
            )
            raise

        purchase.record_late_payment_refund(
            n.payment_ref,
            RefundRecord(
                refund_ref=result.refund_ref,
                amount=amount,
                reason=req.reason,
                refunded_at=datetime.now(timezone.utc),
            ),
            payment_method=n.payment_method,
        )
        try:
            async with self._uow_factory() as uow:
                won = await uow.purchase_repository.compare_and_set(purchase, PurchaseStatus.FAILED)
        except Exception as exc:
            operator_alert(
                "late_payment_refund_ledger_write_failed",
                purchase_id=purchase.id,
                payment_ref=n.payment_ref,
                refund_ref=result.refund_ref,
                error=str(exc),
            )
            raise InternalInconsistencyException(
                "Late payment refunded but ledger not updated",
                details={"purchase_id": purchase.id, "refund_ref": result.refund_ref},
            ) from exc

        if not won:
            async with self._uow_factory(readonly=True) as uow:
                current = await uow.purchase_repository.get_by_id(purchase.id)
            if current is not None and current.late_payment_refunded(n.payment_ref):
                return ReconciliationResult(outcome=ReconciliationOutcome.ALREADY_APPLIED, purchase=current)
            return self._anomaly(current or purchase, n, "late_payment_refund_race_lost")

        logger.warning(
            "late_payment_refunded",
            purchase_id=purchase.id,
            payment_ref=n.payment_ref,
            refund_ref=result.refund_ref,
            refund_status=result.status,
            amount=str(amount),
            event_id=n.event_id,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.LATE_PAYMENT_REFUNDED,
            purchase=purchase,
            reason="late_payment_after_failure",
        )

    def _anomaly(
        self,
        purchase: Optional[Purchase],
        n: PaymentNotification,
        reason: str,
        *,
        details: Optional[dict] = None,
    ) -> ReconciliationResult:
        operator_alert(
            "reconciliation_anomaly",
            reason=reason,
            purchase_id=purchase.id if purchase else None,
            status=purchase.status.value if purchase else None,
            recorded_payment_ref=purchase.gateway_payment_ref if purchase else None,
            order_ref=n.order_ref,
            payment_ref=n.payment_ref,
            provider=n.provider,
            event_id=n.event_id,
            details=details,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.ANOMALY,
            purchase=purchase,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # pending -> failed
    # ------------------------------------------------------------------

    async def _fail(self, n: PaymentNotification) -> ReconciliationResult:
        async with self._uow_factory() as uow:
            purchase = await uow.purchase_repository.get_by_gateway_order_ref(n.order_ref)
            if purchase is None:
                raise PurchaseNotFoundException(n.order_ref)
            if purchase.status != PurchaseStatus.PENDING:
                logger.info(
                    "purchase_failure_ignored",
                    purchase_id=purchase.id,
                    status=purchase.status.value,
                    event_id=n.event_id,
                )
                return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED, purchase=purchase)
            purchase.mark_failed(n.reason or "gateway_reported_failure")
            won = await uow.purchase_repository.compare_and_set(purchase, PurchaseStatus.PENDING)

        if not won:
            logger.info("purchase_failure_ignored", purchase_id=purchase.id, reason="lost_race")
            return ReconciliationResult(outcome=ReconciliationOutcome.IGNORED, purchase=purchase)

        logger.info(
            "purchase_failed",
            purchase_id=purchase.id,
            reason=purchase.failure_reason,
            event_id=n.event_id,
        )
        event = PurchaseFailed(
            purchase_id=purchase.id,
            buyer_id=purchase.buyer_id,
            course_id=purchase.course_id,
            provider=purchase.provider,
            reason=purchase.failure_reason,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.MARKED_FAILED,
            purchase=purchase,
            event=event,
        )

    async def expire_stale_pending(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """超时未确认的 pending 购买标记为 failed（不扇出）"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self._pending_ttl
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.purchase_repository.list_pending_before(cutoff, limit=limit)

        expired = 0
        for purchase in stale:
            purchase.mark_failed("pending_timeout")
            async with self._uow_factory() as uow:
                won = await uow.purchase_repository.compare_and_set(purchase, PurchaseStatus.PENDING)
            if won:
                expired += 1
                logger.info("purchase_expired", purchase_id=purchase.id, created_at=str(purchase.created_at))
        if stale:
            logger.info("pending_expiry_finished", scanned=len(stale), expired=expired)
        return expired
