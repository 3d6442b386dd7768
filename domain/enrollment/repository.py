"""
选课视图仓储接口（外部协作方的反规范化视图）

两个视图都是集合语义：重复添加、删除不存在的成员均为空操作，
因此可以安全地至少一次重试。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class Enrollment:
    buyer_id: int
    course_id: int
    enrolled_at: datetime


class BuyerDirectory(ABC):
    """买家目录：买家已选课程集合"""

    @abstractmethod
    async def buyer_exists(self, buyer_id: int) -> bool:
        pass

    @abstractmethod
    async def add_enrollment(self, buyer_id: int, course_id: int, at: datetime) -> None:
        """幂等添加选课"""
        pass

    @abstractmethod
    async def remove_enrollment(self, buyer_id: int, course_id: int) -> None:
        """幂等移除选课"""
        pass

    @abstractmethod
    async def get_enrollment(self, buyer_id: int, course_id: int) -> Optional[Enrollment]:
        pass

    @abstractmethod
    async def list_enrollments(self, buyer_id: int) -> List[Enrollment]:
        pass


class CourseRoster(ABC):
    """课程花名册：课程已选学员集合"""

    @abstractmethod
    async def add_student(self, course_id: int, buyer_id: int) -> None:
        """幂等添加学员"""
        pass

    @abstractmethod
    async def remove_student(self, course_id: int, buyer_id: int) -> None:
        """幂等移除学员"""
        pass

    @abstractmethod
    async def has_student(self, course_id: int, buyer_id: int) -> bool:
        pass
