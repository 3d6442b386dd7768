"""
课程目录仓储实现（只读）
"""
from typing import Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from domain.course.repository import CourseCatalog, CourseSnapshot
from infrastructure.models.course import CourseModel


class SQLAlchemyCourseCatalog(CourseCatalog):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_course(self, course_id: int) -> Optional[CourseSnapshot]:
        result = await self.session.execute(
            select(CourseModel).where(
                CourseModel.id == course_id,
                CourseModel.is_published.is_(True),
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return CourseSnapshot(
            id=model.id,
            title=model.title,
            price=Decimal(str(model.price)),
            currency=model.currency,
            description=model.description,
        )
