"""
购买查询服务 - 只读用例
"""
from __future__ import annotations

from typing import Callable, List

from application.dto import CourseSummaryDTO, PurchaseDTO, PurchaseStatusDTO, PurchasedCourseDTO
from domain.common.exceptions import CourseNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.purchase.entity import PurchaseStatus


class PurchaseQueryService:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork]) -> None:
        self._uow_factory = uow_factory

    async def purchase_status(self, buyer_id: int, course_id: int) -> PurchaseStatusDTO:
        """课程详情 + 当前买家的最近一次购买状态"""
        async with self._uow_factory(readonly=True) as uow:
            course = await uow.course_catalog.get_course(course_id)
            if course is None:
                raise CourseNotFoundException(course_id)
            completed = await uow.purchase_repository.get_completed(buyer_id, course_id)
            latest = completed or await uow.purchase_repository.get_latest(buyer_id, course_id)
            enrolled = await uow.buyer_directory.get_enrollment(buyer_id, course_id) is not None

        return PurchaseStatusDTO(
            course=CourseSummaryDTO.from_snapshot(course),
            status=latest.status.value if latest else None,
            purchased=completed is not None,
            enrolled=enrolled,
            purchase=PurchaseDTO.from_entity(latest) if latest else None,
        )

    async def purchased_courses(self, buyer_id: int, skip: int = 0, limit: int = 100) -> List[PurchasedCourseDTO]:
        async with self._uow_factory(readonly=True) as uow:
            purchases = await uow.purchase_repository.list_by_buyer(
                buyer_id, status=PurchaseStatus.COMPLETED, skip=skip, limit=limit
            )
            enrollments = {e.course_id: e for e in await uow.buyer_directory.list_enrollments(buyer_id)}

        return [
            PurchasedCourseDTO(
                purchase_id=p.id,
                course_id=p.course_id,
                amount=p.amount,
                currency=p.currency,
                provider=p.provider,
                completed_at=p.completed_at,
                enrolled_at=enrollments[p.course_id].enrolled_at if p.course_id in enrollments else None,
            )
            for p in purchases
        ]
