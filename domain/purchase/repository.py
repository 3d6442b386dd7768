"""
购买账本仓储接口 - 定义购买数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import Purchase, PurchaseStatus


class PurchaseRepository(ABC):
    """购买仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, purchase: Purchase) -> Purchase:
        """创建购买记录"""
        pass

    @abstractmethod
    async def get_by_id(self, purchase_id: int) -> Optional[Purchase]:
        """根据ID获取购买"""
        pass

    @abstractmethod
    async def get_by_gateway_order_ref(self, order_ref: str) -> Optional[Purchase]:
        """根据网关订单号获取购买（对账幂等键）"""
        pass

    @abstractmethod
    async def get_completed(self, buyer_id: int, course_id: int) -> Optional[Purchase]:
        """获取 (buyer, course) 当前有效的 completed 购买"""
        pass

    @abstractmethod
    async def get_latest(self, buyer_id: int, course_id: int) -> Optional[Purchase]:
        """获取 (buyer, course) 最近一次购买尝试"""
        pass

    @abstractmethod
    async def list_by_buyer(
        self,
        buyer_id: int,
        status: Optional[PurchaseStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Purchase]:
        """获取买家的购买列表"""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: PurchaseStatus,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Purchase]:
        """根据状态分页获取购买（按ID升序，便于扫描）"""
        pass

    @abstractmethod
    async def list_pending_before(self, cutoff: datetime, limit: int = 100) -> List[Purchase]:
        """获取创建时间早于 cutoff 的 pending 购买"""
        pass

    @abstractmethod
    async def attach_order_ref(self, purchase: Purchase) -> bool:
        """写入网关订单号；仅当购买仍为 pending 时生效"""
        pass

    @abstractmethod
    async def compare_and_set(self, purchase: Purchase, expected: PurchaseStatus) -> bool:
        """
        条件更新：仅当库中状态仍为 expected 时写入 purchase 的状态相关字段

        返回是否抢到本次迁移（并发下只有一个调用者返回 True）
        """
        pass
