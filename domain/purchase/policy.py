"""
退款策略 - 判断购买是否可退款并计算退款金额
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from domain.common.exceptions import RefundNotAllowedException
from .entity import Purchase


@dataclass(frozen=True)
class RefundPolicy:
    """
    默认策略：完成后 window_days 天内可全额退款

    window_days <= 0 表示不限制时间窗口
    """

    window_days: int = 30
    enabled: bool = True

    def ensure_refundable(self, purchase: Purchase, now: Optional[datetime] = None) -> None:
        if not self.enabled:
            raise RefundNotAllowedException(purchase.id, "refunds_disabled")
        if self.window_days <= 0:
            return
        if purchase.completed_at is None:
            raise RefundNotAllowedException(purchase.id, "completion_time_unknown")
        now = now or datetime.now(timezone.utc)
        if now > purchase.completed_at + timedelta(days=self.window_days):
            raise RefundNotAllowedException(purchase.id, "refund_window_elapsed")

    def refund_amount(self, purchase: Purchase) -> Decimal:
        return purchase.amount
