"""
数据传输对象（DTO）- 应用层与表现层之间的数据传输
"""
from pydantic import BaseModel, Field, model_serializer, ConfigDict
from typing import Optional, Any
from datetime import datetime
from decimal import Decimal

from core.response import to_utc_z
from domain.course.repository import CourseSnapshot
from domain.purchase.entity import Purchase


class DTOBase(BaseModel):
    """Base DTO: unify datetime serialization to UTC-Z for all subclasses."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                return to_utc_z(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, tuple):
                return tuple(convert(v) for v in value)
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


# ---------------------------------------------------------------------------
# 请求 DTO
# ---------------------------------------------------------------------------


class CheckoutRequestDTO(DTOBase):
    """下单请求DTO（价格只从课程目录读取，不接受客户端金额）"""
    course_id: int = Field(..., gt=0, description="课程ID")


class VerifyPaymentDTO(DTOBase):
    """客户端转发的支付确认（订单号、支付号、签名）"""
    model_config = ConfigDict(populate_by_name=True)

    order_ref: str = Field(..., min_length=1, max_length=128, alias="razorpay_order_id")
    payment_ref: str = Field(..., min_length=1, max_length=128, alias="razorpay_payment_id")
    signature: str = Field(..., min_length=1, max_length=256, alias="razorpay_signature")


class RefundRequestDTO(DTOBase):
    """退款请求DTO"""
    purchase_id: int = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# 响应 DTO
# ---------------------------------------------------------------------------


class CourseSummaryDTO(DTOBase):
    id: int
    title: str
    description: Optional[str] = None
    price: Decimal
    currency: str

    @classmethod
    def from_snapshot(cls, course: CourseSnapshot) -> "CourseSummaryDTO":
        return cls(
            id=course.id,
            title=course.title,
            description=course.description,
            price=course.price,
            currency=course.currency,
        )


class RefundDTO(DTOBase):
    refund_ref: str
    amount: Decimal
    reason: Optional[str] = None
    refunded_at: datetime


class PurchaseDTO(DTOBase):
    """购买响应DTO"""
    id: int
    buyer_id: int
    course_id: int
    amount: Decimal
    currency: str
    status: str
    provider: str
    gateway_order_ref: Optional[str] = None
    gateway_payment_ref: Optional[str] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    refund: Optional[RefundDTO] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, purchase: Purchase) -> "PurchaseDTO":
        """将领域实体转换为响应DTO"""
        refund = None
        if purchase.refund is not None:
            refund = RefundDTO(
                refund_ref=purchase.refund.refund_ref,
                amount=purchase.refund.amount,
                reason=purchase.refund.reason,
                refunded_at=purchase.refund.refunded_at,
            )
        return cls(
            id=purchase.id,
            buyer_id=purchase.buyer_id,
            course_id=purchase.course_id,
            amount=purchase.amount,
            currency=purchase.currency,
            status=purchase.status.value,
            provider=purchase.provider,
            gateway_order_ref=purchase.gateway_order_ref,
            gateway_payment_ref=purchase.gateway_payment_ref,
            payment_method=purchase.payment_method,
            failure_reason=purchase.failure_reason,
            refund=refund,
            created_at=purchase.created_at,
            updated_at=purchase.updated_at,
            completed_at=purchase.completed_at,
        )


class CheckoutResultDTO(DTOBase):
    """下单结果：订单信息 + 课程摘要"""
    purchase_id: int
    provider: str
    order_ref: str
    amount: Decimal
    amount_minor: int
    currency: str
    checkout: dict[str, Any] = Field(default_factory=dict)
    course: CourseSummaryDTO


class ReconciliationDTO(DTOBase):
    outcome: str
    anomaly: bool = False
    fanout_deferred: bool = False
    purchase: Optional[PurchaseDTO] = None


class WebhookAckDTO(DTOBase):
    """Webhook 回执：只要签名通过即 2xx，避免网关无限重投"""
    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: Optional[str] = None
    anomaly: bool = False


class PurchaseStatusDTO(DTOBase):
    course: CourseSummaryDTO
    status: Optional[str] = None
    purchased: bool = False
    enrolled: bool = False
    purchase: Optional[PurchaseDTO] = None


class PurchasedCourseDTO(DTOBase):
    purchase_id: int
    course_id: int
    amount: Decimal
    currency: str
    provider: str
    completed_at: Optional[datetime] = None
    enrolled_at: Optional[datetime] = None
