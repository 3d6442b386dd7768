"""
购买领域实体 - 购买账本聚合根
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import (
    AlreadyRefundedException,
    DomainValidationException,
    IllegalPurchaseTransitionException,
)


class PurchaseStatus(str, Enum):
    """购买状态枚举"""
    PENDING = "pending"       # 已下单，等待网关确认
    COMPLETED = "completed"   # 支付已确认，已开通课程
    REFUNDED = "refunded"     # 已退款，课程已回收
    FAILED = "failed"         # 终态：支付失败/取消/超时


# 合法状态迁移（不允许回退，不允许跳过 pending）
ALLOWED_TRANSITIONS: dict[PurchaseStatus, frozenset[PurchaseStatus]] = {
    PurchaseStatus.PENDING: frozenset({PurchaseStatus.COMPLETED, PurchaseStatus.FAILED}),
    PurchaseStatus.COMPLETED: frozenset({PurchaseStatus.REFUNDED}),
    PurchaseStatus.REFUNDED: frozenset(),
    PurchaseStatus.FAILED: frozenset(),
}


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class RefundRecord:
    """退款子记录，仅在 status = refunded 时存在"""

    refund_ref: str
    amount: Decimal
    reason: Optional[str]
    refunded_at: datetime

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"退款金额必须大于0: {self.amount}",
                field="refund_amount",
            )
        self.refunded_at = _ensure_utc(self.refunded_at)


@dataclass
class Purchase:
    """
    购买聚合根 - 一次购买尝试（一个买家 × 一门课程）

    业务规则：
    1. buyer_id / course_id 创建后不可变
    2. amount 在创建时按课程价格快照，离开 pending 后不可变
    3. gateway_payment_ref 只在迁移到 completed 时写入
    4. 状态迁移必须遵循 ALLOWED_TRANSITIONS
    5. refund 子记录只在 refunded 状态存在；例外是 failed 购买上迟到支付的自动退款
    """

    id: Optional[int]
    buyer_id: int
    course_id: int
    amount: Decimal
    currency: str  # ISO-4217
    status: PurchaseStatus
    provider: str  # razorpay, stripe

    gateway_order_ref: Optional[str] = None
    gateway_payment_ref: Optional[str] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    refund: Optional[RefundRecord] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self._validate_amount()
        self._validate_currency()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.completed_at = _ensure_utc(self.completed_at)
        if self.metadata is None:
            self.metadata = {}

    @classmethod
    def open(
        cls,
        *,
        buyer_id: int,
        course_id: int,
        price: Decimal,
        currency: str,
        provider: str,
    ) -> "Purchase":
        """按课程当前价格开启一次购买（pending）"""
        now = datetime.now(timezone.utc)
        return cls(
            id=None,
            buyer_id=buyer_id,
            course_id=course_id,
            amount=Decimal(price),
            currency=currency.upper(),
            status=PurchaseStatus.PENDING,
            provider=provider,
            created_at=now,
            updated_at=now,
        )

    def _validate_amount(self) -> None:
        """业务规则：金额必须大于0"""
        if self.amount <= 0:
            raise DomainValidationException(
                f"购买金额必须大于0: {self.amount}",
                field="amount",
            )

    def _validate_currency(self) -> None:
        """业务规则：货币代码必须是3位字母"""
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(
                f"无效的货币代码: {self.currency}",
                field="currency",
            )

    def can_transition(self, target: PurchaseStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def _ensure_transition(self, target: PurchaseStatus) -> None:
        if not self.can_transition(target):
            raise IllegalPurchaseTransitionException(self.id, self.status.value, target.value)

    def attach_order(self, order_ref: str) -> None:
        """记录网关下单返回的订单号（仅 pending 且尚未绑定时）"""
        if self.status != PurchaseStatus.PENDING:
            raise IllegalPurchaseTransitionException(self.id, self.status.value, "order_attached")
        if self.gateway_order_ref and self.gateway_order_ref != order_ref:
            raise DomainValidationException(
                "购买已绑定其他网关订单",
                field="gateway_order_ref",
            )
        self.gateway_order_ref = order_ref
        self.updated_at = datetime.now(timezone.utc)

    def mark_completed(
        self,
        payment_ref: str,
        *,
        payment_method: Optional[str] = None,
        settled_amount: Optional[Decimal] = None,
    ) -> None:
        """
        标记支付完成

        业务规则：只能从 pending 转为 completed；网关结算金额（若提供）为权威金额
        """
        self._ensure_transition(PurchaseStatus.COMPLETED)
        if not payment_ref:
            raise DomainValidationException("缺少网关支付号", field="gateway_payment_ref")
        if settled_amount is not None:
            if settled_amount <= 0:
                raise DomainValidationException(
                    f"结算金额必须大于0: {settled_amount}",
                    field="amount",
                )
            self.amount = settled_amount
        self.status = PurchaseStatus.COMPLETED
        self.gateway_payment_ref = payment_ref
        self.payment_method = payment_method
        self.completed_at = datetime.now(timezone.utc)
        self.updated_at = self.completed_at
        self.failure_reason = None

    def mark_failed(self, reason: Optional[str] = None) -> None:
        """标记失败：只能从 pending 转为 failed"""
        self._ensure_transition(PurchaseStatus.FAILED)
        self.status = PurchaseStatus.FAILED
        self.failure_reason = reason
        self.updated_at = datetime.now(timezone.utc)

    def mark_refunded(self, record: RefundRecord) -> None:
        """标记已退款：只能从 completed 转为 refunded"""
        self._ensure_transition(PurchaseStatus.REFUNDED)
        if record.amount > self.amount:
            raise DomainValidationException(
                f"退款金额 {record.amount} 超过支付金额 {self.amount}",
                field="refund_amount",
            )
        self.status = PurchaseStatus.REFUNDED
        self.refund = record
        self.updated_at = record.refunded_at

    def record_late_payment_refund(
        self,
        payment_ref: str,
        record: RefundRecord,
        *,
        payment_method: Optional[str] = None,
    ) -> None:
        """
        failed 购买收到了迟到的支付（例如超时清理之后买家才付款）

        钱已退回，状态保持 failed；记录支付号与退款子记录，使重复投递可以幂等识别。
        """
        if self.status != PurchaseStatus.FAILED:
            raise IllegalPurchaseTransitionException(self.id, self.status.value, "late_payment_refunded")
        if self.refund is not None:
            raise AlreadyRefundedException(self.id)
        if not payment_ref:
            raise DomainValidationException("缺少网关支付号", field="gateway_payment_ref")
        self.gateway_payment_ref = payment_ref
        self.payment_method = payment_method
        self.refund = record
        self.updated_at = record.refunded_at

    def late_payment_refunded(self, payment_ref: Optional[str]) -> bool:
        return (
            self.status == PurchaseStatus.FAILED
            and self.refund is not None
            and self.gateway_payment_ref is not None
            and self.gateway_payment_ref == payment_ref
        )

    def settled_with(self, payment_ref: Optional[str]) -> bool:
        """是否已由同一网关支付号完成（用于幂等判断）"""
        return (
            self.status in (PurchaseStatus.COMPLETED, PurchaseStatus.REFUNDED)
            and self.gateway_payment_ref is not None
            and self.gateway_payment_ref == payment_ref
        )

    def grants_enrollment(self) -> bool:
        """只有 completed 的购买对应有效选课"""
        return self.status == PurchaseStatus.COMPLETED
