"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.course.repository import CourseCatalog
from domain.enrollment.repository import BuyerDirectory, CourseRoster
from domain.purchase.repository import PurchaseRepository


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象

    账本与两个选课视图是独立聚合：一次 UoW 只应提交其中一个聚合的写入，
    跨聚合的一致性由应用层的补偿/重试流程保证。
    """

    purchase_repository: PurchaseRepository
    course_catalog: CourseCatalog
    buyer_directory: BuyerDirectory
    course_roster: CourseRoster

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.purchase_repository = None  # type: ignore[assignment]
        self.course_catalog = None  # type: ignore[assignment]
        self.buyer_directory = None  # type: ignore[assignment]
        self.course_roster = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
