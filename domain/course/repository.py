"""
课程目录（外部协作方）- 下单时只读取一次课程价格
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class CourseSnapshot:
    """下单时刻的课程快照"""

    id: int
    title: str
    price: Decimal
    currency: str
    description: Optional[str] = None


class CourseCatalog(ABC):
    """课程目录抽象接口"""

    @abstractmethod
    async def get_course(self, course_id: int) -> Optional[CourseSnapshot]:
        """获取课程价格信息，不存在时返回 None"""
        pass
