"""
购买账本数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, text
)

from .base import Base, utcnow


class PurchaseModel(Base):
    """
    购买数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.purchase.entity.Purchase 中
    """
    __tablename__ = "purchases"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 买家与课程（创建后不可变）
    buyer_id = Column(Integer, nullable=False, index=True, comment="买家ID")
    course_id = Column(Integer, nullable=False, index=True, comment="课程ID")

    # 金额信息（使用 Numeric 存储精确金额，下单时按课程价格快照）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="购买金额")
    currency = Column(String(3), nullable=False, default="INR", comment="货币代码 ISO-4217")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="购买状态: pending/completed/refunded/failed"
    )

    # 网关信息
    provider = Column(String(50), nullable=False, comment="支付网关: razorpay/stripe")
    gateway_order_ref = Column(String(200), unique=True, nullable=True, comment="网关订单号（对账幂等键）")
    gateway_payment_ref = Column(String(200), nullable=True, index=True, comment="网关支付号")
    payment_method = Column(String(100), nullable=True, comment="支付方式")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 退款子记录（仅 refunded 状态存在）
    refund_ref = Column(String(200), nullable=True, comment="网关退款号")
    refund_amount = Column(Numeric(precision=15, scale=2), nullable=True, comment="退款金额")
    refund_reason = Column(Text, nullable=True, comment="退款原因")
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="退款时间")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="更新时间"
    )
    completed_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 索引
    __table_args__ = (
        Index("ix_purchases_buyer_course", "buyer_id", "course_id"),
        Index("ix_purchases_status_created", "status", "created_at"),
        # 同一 (buyer, course) 至多一条 completed 记录
        Index(
            "uq_purchases_completed_buyer_course",
            "buyer_id",
            "course_id",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
    )

    def __repr__(self):
        return (
            f"<PurchaseModel(id={self.id}, buyer_id={self.buyer_id}, course_id={self.course_id}, "
            f"amount={self.amount}, status='{self.status}')>"
        )
