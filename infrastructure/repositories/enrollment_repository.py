"""
选课视图仓储实现 - 集合语义的幂等添加/删除
"""
from typing import List, Optional
from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from sqlalchemy.dialects import postgresql, sqlite

from domain.enrollment.repository import BuyerDirectory, CourseRoster, Enrollment
from infrastructure.models.course import BuyerModel
from infrastructure.models.enrollment import BuyerEnrollmentModel, CourseStudentModel
from core.logging_config import get_logger


logger = get_logger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def _insert_ignore_conflict(session: AsyncSession, model, exists_query, **values) -> None:
    """INSERT ... ON CONFLICT DO NOTHING；不支持的方言退化为先查后插"""
    dialect = session.get_bind().dialect.name
    insert_fn = _UPSERT_DIALECTS.get(dialect)
    if insert_fn is not None:
        await session.execute(insert_fn(model).values(**values).on_conflict_do_nothing())
        return
    result = await session.execute(exists_query)
    if result.scalar_one_or_none() is None:
        session.add(model(**values))
        await session.flush()


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SQLAlchemyBuyerDirectory(BuyerDirectory):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def buyer_exists(self, buyer_id: int) -> bool:
        result = await self.session.execute(select(BuyerModel.id).where(BuyerModel.id == buyer_id))
        return result.scalar_one_or_none() is not None

    async def add_enrollment(self, buyer_id: int, course_id: int, at: datetime) -> None:
        await _insert_ignore_conflict(
            self.session,
            BuyerEnrollmentModel,
            select(BuyerEnrollmentModel.id).where(
                BuyerEnrollmentModel.buyer_id == buyer_id,
                BuyerEnrollmentModel.course_id == course_id,
            ),
            buyer_id=buyer_id,
            course_id=course_id,
            enrolled_at=at,
        )
        logger.debug("buyer_enrollment_added", buyer_id=buyer_id, course_id=course_id)

    async def remove_enrollment(self, buyer_id: int, course_id: int) -> None:
        await self.session.execute(
            delete(BuyerEnrollmentModel).where(
                BuyerEnrollmentModel.buyer_id == buyer_id,
                BuyerEnrollmentModel.course_id == course_id,
            )
        )
        logger.debug("buyer_enrollment_removed", buyer_id=buyer_id, course_id=course_id)

    async def get_enrollment(self, buyer_id: int, course_id: int) -> Optional[Enrollment]:
        result = await self.session.execute(
            select(BuyerEnrollmentModel).where(
                BuyerEnrollmentModel.buyer_id == buyer_id,
                BuyerEnrollmentModel.course_id == course_id,
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return Enrollment(buyer_id=model.buyer_id, course_id=model.course_id, enrolled_at=_utc(model.enrolled_at))

    async def list_enrollments(self, buyer_id: int) -> List[Enrollment]:
        result = await self.session.execute(
            select(BuyerEnrollmentModel)
            .where(BuyerEnrollmentModel.buyer_id == buyer_id)
            .order_by(BuyerEnrollmentModel.enrolled_at.desc())
        )
        return [
            Enrollment(buyer_id=m.buyer_id, course_id=m.course_id, enrolled_at=_utc(m.enrolled_at))
            for m in result.scalars().all()
        ]


class SQLAlchemyCourseRoster(CourseRoster):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_student(self, course_id: int, buyer_id: int) -> None:
        await _insert_ignore_conflict(
            self.session,
            CourseStudentModel,
            select(CourseStudentModel.id).where(
                CourseStudentModel.course_id == course_id,
                CourseStudentModel.buyer_id == buyer_id,
            ),
            course_id=course_id,
            buyer_id=buyer_id,
            added_at=datetime.now(timezone.utc),
        )
        logger.debug("course_student_added", course_id=course_id, buyer_id=buyer_id)

    async def remove_student(self, course_id: int, buyer_id: int) -> None:
        await self.session.execute(
            delete(CourseStudentModel).where(
                CourseStudentModel.course_id == course_id,
                CourseStudentModel.buyer_id == buyer_id,
            )
        )
        logger.debug("course_student_removed", course_id=course_id, buyer_id=buyer_id)

    async def has_student(self, course_id: int, buyer_id: int) -> bool:
        result = await self.session.execute(
            select(CourseStudentModel.id).where(
                CourseStudentModel.course_id == course_id,
                CourseStudentModel.buyer_id == buyer_id,
            )
        )
        return result.scalar_one_or_none() is not None
