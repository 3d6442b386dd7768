import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from application.services.enrollment_service import EnrollmentFanout, FanoutStatus
from application.services.reconciliation_service import ReconciliationEngine, ReconciliationOutcome
from domain.common.exceptions import (
    DomainValidationException,
    InternalInconsistencyException,
    NotAuthorizedException,
    PurchaseNotFoundException,
)
from domain.purchase.entity import PurchaseStatus
from infrastructure.external.payments.exceptions import PaymentProviderError
from tests.fakes import completed_purchase, completion, pending_purchase, utcnow


def _engine(store, scheduler=None, **kwargs):
    fanout = EnrollmentFanout(store.uow_factory, scheduler=scheduler, inline_attempts=2, base_backoff=0, max_backoff=0)
    return ReconciliationEngine(store.uow_factory, fanout, **kwargs)


@pytest.mark.asyncio
async def test_completion_applies_once_and_enrolls(store):
    p = pending_purchase(store)
    result = await _engine(store).apply(completion())

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.fanout == FanoutStatus.APPLIED
    assert result.event.payment_ref == "pay_1"
    stored = store.purchase(p.id)
    assert stored.status == PurchaseStatus.COMPLETED
    assert stored.payment_method == "upi"
    assert (7, 42) in store.enrollments
    assert (42, 7) in store.roster


@pytest.mark.asyncio
async def test_redelivered_confirmation_is_idempotent(store):
    p = pending_purchase(store)
    engine = _engine(store)
    await engine.apply(completion())
    enrolled_at = store.enrollments[(7, 42)]

    for _ in range(3):
        again = await engine.apply(completion())
        assert again.outcome == ReconciliationOutcome.ALREADY_APPLIED
        assert not again.anomaly
    assert store.purchase(p.id).status == PurchaseStatus.COMPLETED
    assert store.enrollments[(7, 42)] == enrolled_at


@pytest.mark.asyncio
async def test_concurrent_confirmations_have_single_winner(store, monkeypatch):
    pending_purchase(store)
    engine = _engine(store)
    grants = []
    original = EnrollmentFanout.grant

    async def counting_grant(self, purchase):
        grants.append(purchase.id)
        return await original(self, purchase)

    monkeypatch.setattr(EnrollmentFanout, "grant", counting_grant)

    results = await asyncio.gather(*(engine.apply(completion()) for _ in range(5)))
    outcomes = [r.outcome for r in results]
    assert outcomes.count(ReconciliationOutcome.APPLIED) == 1
    assert outcomes.count(ReconciliationOutcome.ALREADY_APPLIED) == 4
    assert len(grants) == 1


@pytest.mark.asyncio
async def test_conflicting_payment_ref_is_anomaly_and_ledger_untouched(store, monkeypatch):
    p = completed_purchase(store, payment_ref="pay_1")
    alerts = []
    monkeypatch.setattr(
        "application.services.reconciliation_service.operator_alert",
        lambda event, **kw: alerts.append((event, kw)),
    )

    result = await _engine(store).apply(completion(payment_ref="pay_2"))

    assert result.outcome == ReconciliationOutcome.ANOMALY
    assert result.reason == "payment_ref_conflict"
    assert alerts and alerts[0][0] == "reconciliation_anomaly"
    assert store.purchase(p.id).gateway_payment_ref == "pay_1"


@pytest.mark.asyncio
async def test_completion_for_failed_purchase_is_anomaly(store):
    p = pending_purchase(store)
    await _engine(store).apply(completion(kind="failed", payment_ref=None, reason="cancelled"))
    result = await _engine(store).apply(completion())
    assert result.outcome == ReconciliationOutcome.ANOMALY
    assert result.reason == "completion_for_failed_purchase"
    assert store.purchase(p.id).status == PurchaseStatus.FAILED
    assert (7, 42) not in store.enrollments


@pytest.mark.asyncio
async def test_second_completed_purchase_for_same_course_is_anomaly(store):
    completed_purchase(store, order_ref="order_0", payment_ref="pay_0")
    second = pending_purchase(store, order_ref="order_1")
    result = await _engine(store).apply(completion())
    assert result.outcome == ReconciliationOutcome.ANOMALY
    assert result.reason == "duplicate_completed_purchase"
    assert store.purchase(second.id).status == PurchaseStatus.PENDING


@pytest.mark.asyncio
async def test_currency_mismatch_is_anomaly(store):
    p = pending_purchase(store)
    result = await _engine(store).apply(completion(currency="USD", settled_amount=Decimal("24.00")))
    assert result.anomaly
    assert store.purchase(p.id).status == PurchaseStatus.PENDING


@pytest.mark.asyncio
async def test_gateway_settled_amount_is_authoritative(store):
    p = pending_purchase(store)
    await _engine(store).apply(completion(settled_amount=Decimal("1899.00")))
    assert store.purchase(p.id).amount == Decimal("1899.00")


@pytest.mark.asyncio
async def test_unknown_order_and_missing_payment_ref(store):
    engine = _engine(store)
    with pytest.raises(PurchaseNotFoundException):
        await engine.apply(completion(order_ref="order_404"))
    with pytest.raises(DomainValidationException):
        await engine.apply(completion(payment_ref=None))


@pytest.mark.asyncio
async def test_failure_only_applies_to_pending(store):
    p = pending_purchase(store)
    engine = _engine(store)
    failed = await engine.apply(completion(kind="failed", payment_ref=None, reason="expired"))
    assert failed.outcome == ReconciliationOutcome.MARKED_FAILED
    assert store.purchase(p.id).failure_reason == "expired"

    done = completed_purchase(store, order_ref="order_9", payment_ref="pay_9")
    ignored = await engine.apply(completion(kind="failed", order_ref="order_9", payment_ref=None))
    assert ignored.outcome == ReconciliationOutcome.IGNORED
    assert store.purchase(done.id).status == PurchaseStatus.COMPLETED


@pytest.mark.asyncio
async def test_fanout_failure_is_deferred_not_rolled_back(store, scheduler):
    p = pending_purchase(store)
    store.view_failures = 10
    result = await _engine(store, scheduler=scheduler).apply(completion())

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.fanout == FanoutStatus.DEFERRED
    assert result.fanout_deferred
    assert store.purchase(p.id).status == PurchaseStatus.COMPLETED
    assert scheduler.calls == [(p.id, "grant", 30)]


@pytest.mark.asyncio
async def test_expire_stale_pending(store):
    stale = pending_purchase(store, order_ref="order_old", created_at=utcnow() - timedelta(hours=3))
    fresh = pending_purchase(store, order_ref="order_new")
    expired = await _engine(store, pending_ttl_minutes=60).expire_stale_pending()

    assert expired == 1
    assert store.purchase(stale.id).status == PurchaseStatus.FAILED
    assert store.purchase(stale.id).failure_reason == "pending_timeout"
    assert store.purchase(fresh.id).status == PurchaseStatus.PENDING


@pytest.mark.asyncio
async def test_verified_payment_after_expiry_is_refunded(store, gateway):
    p = pending_purchase(store, created_at=utcnow() - timedelta(hours=25))
    engine = _engine(store, gateway=gateway)
    assert await engine.expire_stale_pending() == 1

    result = await engine.apply(completion())

    assert result.outcome == ReconciliationOutcome.LATE_PAYMENT_REFUNDED
    assert not result.anomaly
    req = gateway.refunds[0]
    assert req.payment_ref == "pay_1"
    assert req.amount == Decimal("1999.00")
    assert req.idempotency_key == f"late-refund-{p.id}-pay_1"
    stored = store.purchase(p.id)
    assert stored.status == PurchaseStatus.FAILED
    assert stored.failure_reason == "pending_timeout"
    assert stored.gateway_payment_ref == "pay_1"
    assert stored.refund.refund_ref == f"rfnd_{p.id}"
    assert (7, 42) not in store.enrollments

    again = await engine.apply(completion())
    assert again.outcome == ReconciliationOutcome.ALREADY_APPLIED
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_late_payment_refund_failure_alerts_and_raises(store, gateway, monkeypatch):
    p = pending_purchase(store)
    alerts = []
    monkeypatch.setattr(
        "application.services.reconciliation_service.operator_alert",
        lambda event, **kw: alerts.append((event, kw)),
    )
    engine = _engine(store, gateway=gateway)
    await engine.apply(completion(kind="failed", payment_ref=None, reason="cancelled"))
    gateway.refund_error = PaymentProviderError("refund rejected", provider="razorpay")

    with pytest.raises(PaymentProviderError):
        await engine.apply(completion())

    assert alerts[0][0] == "late_payment_refund_failed"
    stored = store.purchase(p.id)
    assert stored.status == PurchaseStatus.FAILED
    assert stored.refund is None

    # 网关重投时再试一次
    gateway.refund_error = None
    result = await engine.apply(completion())
    assert result.outcome == ReconciliationOutcome.LATE_PAYMENT_REFUNDED
    assert [r.idempotency_key for r in gateway.refunds] == [f"late-refund-{p.id}-pay_1"] * 2


@pytest.mark.asyncio
async def test_late_payment_ledger_write_failure_is_internal_inconsistency(store, gateway, monkeypatch):
    p = pending_purchase(store)
    alerts = []
    monkeypatch.setattr(
        "application.services.reconciliation_service.operator_alert",
        lambda event, **kw: alerts.append((event, kw)),
    )
    engine = _engine(store, gateway=gateway)
    await engine.apply(completion(kind="failed", payment_ref=None))
    store.cas_error = RuntimeError("database is locked")

    with pytest.raises(InternalInconsistencyException):
        await engine.apply(completion())

    assert len(gateway.refunds) == 1
    assert alerts[0][0] == "late_payment_refund_ledger_write_failed"
    assert store.purchase(p.id).refund is None


@pytest.mark.asyncio
async def test_completion_for_another_buyer_is_forbidden(store):
    p = pending_purchase(store, buyer_id=7)
    with pytest.raises(NotAuthorizedException):
        await _engine(store).apply(completion(), buyer_id=8)
    assert store.purchase(p.id).status == PurchaseStatus.PENDING
