"""
购买账本仓储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from domain.common.exceptions import (
    DuplicateCompletedPurchaseException,
    PaymentGatewayError,
)
from domain.purchase.entity import Purchase, PurchaseStatus, RefundRecord
from domain.purchase.repository import PurchaseRepository
from infrastructure.models.purchase import PurchaseModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyPurchaseRepository(PurchaseRepository):
    """购买仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PurchaseModel) -> Purchase:
        """将数据库模型转换为领域实体"""
        refund = None
        if model.refund_ref:
            refund = RefundRecord(
                refund_ref=model.refund_ref,
                amount=Decimal(str(model.refund_amount)),
                reason=model.refund_reason,
                refunded_at=model.refunded_at,
            )
        return Purchase(
            id=model.id,
            buyer_id=model.buyer_id,
            course_id=model.course_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=PurchaseStatus(model.status),
            provider=model.provider,
            gateway_order_ref=model.gateway_order_ref,
            gateway_payment_ref=model.gateway_payment_ref,
            payment_method=model.payment_method,
            failure_reason=model.failure_reason,
            refund=refund,
            created_at=model.created_at,
            updated_at=model.updated_at,
            completed_at=model.completed_at,
            metadata=model.extra_metadata or {}
        )

    def _to_model(self, entity: Purchase) -> PurchaseModel:
        """将领域实体转换为数据库模型"""
        return PurchaseModel(
            id=entity.id,
            buyer_id=entity.buyer_id,
            course_id=entity.course_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            provider=entity.provider,
            gateway_order_ref=entity.gateway_order_ref,
            gateway_payment_ref=entity.gateway_payment_ref,
            payment_method=entity.payment_method,
            failure_reason=entity.failure_reason,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            completed_at=entity.completed_at,
            extra_metadata=entity.metadata
        )

    @staticmethod
    def _state_values(entity: Purchase) -> dict:
        """状态迁移时允许写入的字段（买家、课程、网关订单号不在其中）"""
        refund = entity.refund
        return {
            "status": entity.status.value,
            "amount": entity.amount,
            "gateway_payment_ref": entity.gateway_payment_ref,
            "payment_method": entity.payment_method,
            "failure_reason": entity.failure_reason,
            "completed_at": entity.completed_at,
            "updated_at": entity.updated_at,
            "refund_ref": refund.refund_ref if refund else None,
            "refund_amount": refund.amount if refund else None,
            "refund_reason": refund.reason if refund else None,
            "refunded_at": refund.refunded_at if refund else None,
        }

    async def create(self, purchase: Purchase) -> Purchase:
        """创建购买记录"""
        db_purchase = self._to_model(purchase)
        self.session.add(db_purchase)
        await self.session.flush()
        await self.session.refresh(db_purchase)
        logger.info(
            "purchase_created",
            purchase_id=db_purchase.id,
            buyer_id=db_purchase.buyer_id,
            course_id=db_purchase.course_id,
            provider=db_purchase.provider,
        )
        return self._to_entity(db_purchase)

    async def get_by_id(self, purchase_id: int) -> Optional[Purchase]:
        """根据ID获取购买"""
        result = await self.session.execute(
            select(PurchaseModel).where(PurchaseModel.id == purchase_id)
        )
        db_purchase = result.scalar_one_or_none()
        return self._to_entity(db_purchase) if db_purchase else None

    async def get_by_gateway_order_ref(self, order_ref: str) -> Optional[Purchase]:
        """根据网关订单号获取购买"""
        result = await self.session.execute(
            select(PurchaseModel).where(PurchaseModel.gateway_order_ref == order_ref)
        )
        db_purchase = result.scalar_one_or_none()
        return self._to_entity(db_purchase) if db_purchase else None

    async def get_completed(self, buyer_id: int, course_id: int) -> Optional[Purchase]:
        result = await self.session.execute(
            select(PurchaseModel).where(
                PurchaseModel.buyer_id == buyer_id,
                PurchaseModel.course_id == course_id,
                PurchaseModel.status == PurchaseStatus.COMPLETED.value,
            )
        )
        db_purchase = result.scalars().first()
        return self._to_entity(db_purchase) if db_purchase else None

    async def get_latest(self, buyer_id: int, course_id: int) -> Optional[Purchase]:
        result = await self.session.execute(
            select(PurchaseModel)
            .where(
                PurchaseModel.buyer_id == buyer_id,
                PurchaseModel.course_id == course_id,
            )
            .order_by(PurchaseModel.created_at.desc(), PurchaseModel.id.desc())
            .limit(1)
        )
        db_purchase = result.scalars().first()
        return self._to_entity(db_purchase) if db_purchase else None

    async def list_by_buyer(
        self,
        buyer_id: int,
        status: Optional[PurchaseStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Purchase]:
        """获取买家的购买列表"""
        query = select(PurchaseModel).where(PurchaseModel.buyer_id == buyer_id)

        if status:
            query = query.where(PurchaseModel.status == status.value)

        query = query.order_by(PurchaseModel.created_at.desc(), PurchaseModel.id.desc()).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_by_status(
        self,
        status: PurchaseStatus,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Purchase]:
        """根据状态获取购买列表（按ID升序，分页稳定）"""
        result = await self.session.execute(
            select(PurchaseModel)
            .where(PurchaseModel.status == status.value)
            .order_by(PurchaseModel.id.asc())
            .offset(skip)
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_pending_before(self, cutoff: datetime, limit: int = 100) -> List[Purchase]:
        result = await self.session.execute(
            select(PurchaseModel)
            .where(
                PurchaseModel.status == PurchaseStatus.PENDING.value,
                PurchaseModel.created_at < cutoff,
            )
            .order_by(PurchaseModel.created_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def attach_order_ref(self, purchase: Purchase) -> bool:
        stmt = (
            update(PurchaseModel)
            .where(
                PurchaseModel.id == purchase.id,
                PurchaseModel.status == PurchaseStatus.PENDING.value,
            )
            .values(
                gateway_order_ref=purchase.gateway_order_ref,
                updated_at=purchase.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(
                "purchase_order_ref_conflict",
                purchase_id=purchase.id,
                order_ref=purchase.gateway_order_ref,
            )
            raise PaymentGatewayError(
                "Gateway returned an order reference that is already in use",
                provider=purchase.provider,
                details={"purchase_id": purchase.id},
            ) from e
        return result.rowcount == 1

    async def compare_and_set(self, purchase: Purchase, expected: PurchaseStatus) -> bool:
        """单条 UPDATE ... WHERE id = :id AND status = :expected，影响行数决定胜者"""
        stmt = (
            update(PurchaseModel)
            .where(
                PurchaseModel.id == purchase.id,
                PurchaseModel.status == expected.value,
            )
            .values(**self._state_values(purchase))
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as e:
            await self.session.rollback()
            if purchase.status == PurchaseStatus.COMPLETED:
                logger.warning(
                    "purchase_completed_conflict",
                    purchase_id=purchase.id,
                    buyer_id=purchase.buyer_id,
                    course_id=purchase.course_id,
                )
                raise DuplicateCompletedPurchaseException(purchase.buyer_id, purchase.course_id) from e
            raise
        won = result.rowcount == 1
        logger.info(
            "purchase_status_cas",
            purchase_id=purchase.id,
            expected=expected.value,
            target=purchase.status.value,
            won=won,
        )
        return won
