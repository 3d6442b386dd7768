import pytest

from application.services.purchase_query_service import PurchaseQueryService
from domain.common.exceptions import CourseNotFoundException
from tests.fakes import completed_purchase, pending_purchase


@pytest.mark.asyncio
async def test_status_without_any_purchase(store):
    status = await PurchaseQueryService(store.uow_factory).purchase_status(7, 42)
    assert status.course.id == 42
    assert status.status is None
    assert not status.purchased
    assert not status.enrolled


@pytest.mark.asyncio
async def test_completed_purchase_wins_over_later_attempts(store):
    done = completed_purchase(store, order_ref="order_a")
    pending_purchase(store, order_ref="order_b")
    store.enrollments[(7, 42)] = done.completed_at

    status = await PurchaseQueryService(store.uow_factory).purchase_status(7, 42)
    assert status.purchased
    assert status.enrolled
    assert status.status == "completed"
    assert status.purchase.id == done.id


@pytest.mark.asyncio
async def test_unknown_course(store):
    with pytest.raises(CourseNotFoundException):
        await PurchaseQueryService(store.uow_factory).purchase_status(7, 999)


@pytest.mark.asyncio
async def test_purchased_courses_lists_completed_only(store):
    store.add_course(43)
    done = completed_purchase(store, order_ref="order_a")
    pending_purchase(store, course_id=43, order_ref="order_b")
    store.enrollments[(7, 42)] = done.completed_at

    courses = await PurchaseQueryService(store.uow_factory).purchased_courses(7)
    assert [c.course_id for c in courses] == [42]
    assert courses[0].enrolled_at == done.completed_at
    assert await PurchaseQueryService(store.uow_factory).purchased_courses(8) == []
