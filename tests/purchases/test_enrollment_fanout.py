import copy

import pytest

from application.services.enrollment_service import (
    EnrollmentFanout,
    EnrollmentSweeper,
    FanoutAction,
    FanoutStatus,
)
from domain.purchase.entity import PurchaseStatus
from tests.fakes import RecordingScheduler, completed_purchase, pending_purchase


def _fanout(store, scheduler=None, attempts=3):
    return EnrollmentFanout(
        store.uow_factory,
        scheduler=scheduler,
        inline_attempts=attempts,
        base_backoff=0,
        max_backoff=0,
        deferred_countdown=10,
    )


@pytest.mark.asyncio
async def test_grant_retries_inline_before_succeeding(store):
    p = completed_purchase(store)
    store.view_failures = 2
    status = await _fanout(store).grant(p)
    assert status == FanoutStatus.APPLIED
    assert (7, 42) in store.enrollments
    assert (42, 7) in store.roster


@pytest.mark.asyncio
async def test_grant_is_idempotent(store):
    p = completed_purchase(store)
    fanout = _fanout(store)
    await fanout.grant(p)
    await fanout.grant(p)
    assert list(store.enrollments) == [(7, 42)]
    assert store.roster == {(42, 7)}


@pytest.mark.asyncio
async def test_dispatch_failure_strands_and_alerts(store, monkeypatch):
    p = completed_purchase(store)
    store.view_failures = 100
    alerts = []
    monkeypatch.setattr(
        "application.services.enrollment_service.operator_alert",
        lambda event, **kw: alerts.append(event),
    )
    status = await _fanout(store, scheduler=RecordingScheduler(fail=True), attempts=1).grant(p)
    assert status == FanoutStatus.STRANDED
    assert alerts == ["enrollment_fanout_stranded"]
    assert store.purchase(p.id).status == PurchaseStatus.COMPLETED


@pytest.mark.asyncio
async def test_revoke_removes_both_views(store):
    p = completed_purchase(store)
    fanout = _fanout(store)
    await fanout.grant(p)
    stored = store.purchases[p.id]
    stored.status = PurchaseStatus.REFUNDED
    status = await fanout.revoke(store.purchase(p.id))
    assert status == FanoutStatus.APPLIED
    assert (7, 42) not in store.enrollments
    assert (42, 7) not in store.roster


@pytest.mark.asyncio
async def test_revoke_skipped_when_newer_purchase_holds_the_grant(store):
    old = completed_purchase(store, order_ref="order_old", payment_ref="pay_old")
    store.purchases[old.id].status = PurchaseStatus.REFUNDED
    newer = completed_purchase(store, order_ref="order_new", payment_ref="pay_new")
    fanout = _fanout(store)
    await fanout.grant(newer)

    await fanout.revoke(store.purchase(old.id))
    assert (7, 42) in store.enrollments
    assert (42, 7) in store.roster


@pytest.mark.asyncio
async def test_run_deferred_rechecks_ledger(store):
    p = pending_purchase(store)
    fanout = _fanout(store)
    assert await fanout.run_deferred(p.id, "grant") == FanoutStatus.SKIPPED
    assert await fanout.run_deferred(999, "grant") == FanoutStatus.SKIPPED

    done = copy.deepcopy(store.purchases[p.id])
    done.mark_completed("pay_1")
    store.purchases[p.id] = done
    assert await fanout.run_deferred(p.id, FanoutAction.GRANT.value) == FanoutStatus.APPLIED
    assert (7, 42) in store.enrollments


@pytest.mark.asyncio
async def test_sweeper_repairs_drift_in_both_directions(store):
    granted = completed_purchase(store, order_ref="order_a", payment_ref="pay_a")
    refunded = completed_purchase(store, course_id=43, order_ref="order_b", payment_ref="pay_b")
    store.purchases[refunded.id].status = PurchaseStatus.REFUNDED
    # refunded purchase still visible in the views, completed one missing
    store.enrollments[(7, 43)] = refunded.completed_at
    store.roster.add((43, 7))

    stats = await EnrollmentSweeper(store.uow_factory, _fanout(store)).sweep(batch_size=1)

    assert stats == {"checked": 2, "granted": 1, "revoked": 1, "errors": 0}
    assert (7, granted.course_id) in store.enrollments
    assert (7, 43) not in store.enrollments
    assert (43, 7) not in store.roster

    again = await EnrollmentSweeper(store.uow_factory, _fanout(store)).sweep()
    assert again["granted"] == 0 and again["revoked"] == 0
