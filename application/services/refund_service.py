"""
退款编排（application/services）

顺序：校验归属与状态 → 退款策略 → 网关退款（幂等键）→ 账本 completed→refunded（CAS）→ 撤销扇出。
网关失败时购买保持 completed，不做任何撤销。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from application.dto import PurchaseDTO
from application.dtos.payments import RefundRequest
from application.ports.payment_gateway import PaymentGateway
from application.services.enrollment_service import EnrollmentFanout
from core.alerts import operator_alert
from core.logging_config import get_logger
from domain.common.exceptions import (
    AlreadyRefundedException,
    IllegalPurchaseTransitionException,
    InternalInconsistencyException,
    NotAuthorizedException,
    PurchaseNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.purchase.entity import PurchaseStatus, RefundRecord
from domain.purchase.events import PurchaseRefunded
from domain.purchase.policy import RefundPolicy


logger = get_logger(__name__)


class RefundOrchestrator:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        fanout: EnrollmentFanout,
        policy: Optional[RefundPolicy] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._fanout = fanout
        self._policy = policy or RefundPolicy()

    async def refund(self, purchase_id: int, buyer_id: int, reason: Optional[str] = None) -> PurchaseDTO:
        async with self._uow_factory(readonly=True) as uow:
            purchase = await uow.purchase_repository.get_by_id(purchase_id)
        if purchase is None:
            raise PurchaseNotFoundException(str(purchase_id))
        if purchase.buyer_id != buyer_id:
            raise NotAuthorizedException(purchase_id)
        if purchase.status == PurchaseStatus.REFUNDED:
            raise AlreadyRefundedException(purchase_id)
        if purchase.status != PurchaseStatus.COMPLETED:
            raise IllegalPurchaseTransitionException(
                purchase_id, purchase.status.value, PurchaseStatus.REFUNDED.value
            )
        if purchase.provider != self.gateway.provider:
            # 两种网关流程不可互换：退款必须回到原网关
            raise IllegalPurchaseTransitionException(
                purchase_id, f"{purchase.status.value}@{purchase.provider}", PurchaseStatus.REFUNDED.value
            )
        self._policy.ensure_refundable(purchase)
        amount = self._policy.refund_amount(purchase)

        req = RefundRequest(
            purchase_id=purchase_id,
            payment_ref=purchase.gateway_payment_ref,
            amount=amount,
            currency=purchase.currency,
            reason=reason,
            idempotency_key=f"refund-{purchase_id}",
        )
        logger.info(
            "purchase_refund_request",
            purchase_id=purchase_id,
            provider=self.gateway.provider,
            amount=str(amount),
            idempotency_key=req.idempotency_key,
        )
        # 网关异常直接上抛，账本保持 completed
        result = await self.gateway.refund(req)

        purchase.mark_refunded(
            RefundRecord(
                refund_ref=result.refund_ref,
                amount=amount,
                reason=reason,
                refunded_at=datetime.now(timezone.utc),
            )
        )
        try:
            async with self._uow_factory() as uow:
                won = await uow.purchase_repository.compare_and_set(purchase, PurchaseStatus.COMPLETED)
        except Exception as exc:
            # 钱已退出但账本仍是 completed：需要人工补记
            operator_alert(
                "refund_ledger_write_failed",
                purchase_id=purchase_id,
                refund_ref=result.refund_ref,
                amount=str(amount),
                error=str(exc),
            )
            raise InternalInconsistencyException(
                "Refund issued but ledger not updated",
                details={"purchase_id": purchase_id, "refund_ref": result.refund_ref},
            ) from exc
        if not won:
            # 并发退款：网关幂等键保证只退一次，输家不再撤销
            logger.warning(
                "purchase_refund_race_lost",
                purchase_id=purchase_id,
                refund_ref=result.refund_ref,
            )
            raise AlreadyRefundedException(purchase_id)

        event = PurchaseRefunded(
            purchase_id=purchase.id,
            buyer_id=purchase.buyer_id,
            course_id=purchase.course_id,
            provider=purchase.provider,
            refund_ref=result.refund_ref,
            amount=str(amount),
        )
        logger.info(
            "purchase_refunded",
            purchase_id=purchase_id,
            refund_ref=result.refund_ref,
            refund_status=result.status,
            amount=str(amount),
            gateway_amount_minor=result.amount_minor,
            event_id=event.event_id,
        )
        await self._fanout.revoke(purchase)
        return PurchaseDTO.from_entity(purchase)
