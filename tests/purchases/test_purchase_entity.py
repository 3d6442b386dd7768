from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.common.exceptions import (
    AlreadyRefundedException,
    DomainValidationException,
    IllegalPurchaseTransitionException,
    RefundNotAllowedException,
)
from domain.purchase.entity import Purchase, PurchaseStatus, RefundRecord
from domain.purchase.policy import RefundPolicy


def _open(amount="1999.00", currency="inr"):
    return Purchase.open(buyer_id=1, course_id=2, price=Decimal(amount), currency=currency, provider="razorpay")


def _refund(amount="1999.00"):
    return RefundRecord(refund_ref="rfnd_1", amount=Decimal(amount), reason=None, refunded_at=datetime.now(timezone.utc))


def test_open_snapshots_price_and_normalizes_currency():
    p = _open()
    assert p.status == PurchaseStatus.PENDING
    assert p.amount == Decimal("1999.00")
    assert p.currency == "INR"
    assert p.created_at.tzinfo is not None


@pytest.mark.parametrize("amount", ["0", "-5"])
def test_non_positive_amount_rejected(amount):
    with pytest.raises(DomainValidationException):
        _open(amount=amount)


def test_invalid_currency_rejected():
    with pytest.raises(DomainValidationException):
        _open(currency="RUPEES")


def test_complete_records_payment_and_settled_amount():
    p = _open()
    p.mark_completed("pay_1", payment_method="upi", settled_amount=Decimal("1899.00"))
    assert p.status == PurchaseStatus.COMPLETED
    assert p.gateway_payment_ref == "pay_1"
    assert p.amount == Decimal("1899.00")
    assert p.completed_at is not None
    assert p.settled_with("pay_1")
    assert not p.settled_with("pay_2")


def test_complete_requires_payment_ref():
    with pytest.raises(DomainValidationException):
        _open().mark_completed("")


def test_no_transition_out_of_failed():
    p = _open()
    p.mark_failed("cancelled")
    with pytest.raises(IllegalPurchaseTransitionException):
        p.mark_completed("pay_1")
    with pytest.raises(IllegalPurchaseTransitionException):
        p.mark_failed("again")


def test_late_payment_refund_keeps_purchase_failed():
    p = _open()
    with pytest.raises(IllegalPurchaseTransitionException):
        p.record_late_payment_refund("pay_1", _refund())

    p.mark_failed("pending_timeout")
    p.record_late_payment_refund("pay_1", _refund(), payment_method="upi")
    assert p.status == PurchaseStatus.FAILED
    assert p.gateway_payment_ref == "pay_1"
    assert p.late_payment_refunded("pay_1")
    assert not p.late_payment_refunded("pay_2")
    assert not p.settled_with("pay_1")
    with pytest.raises(AlreadyRefundedException):
        p.record_late_payment_refund("pay_2", _refund())

def test_refund_only_from_completed():
    p = _open()
    with pytest.raises(IllegalPurchaseTransitionException):
        p.mark_refunded(_refund())
    p.mark_completed("pay_1")
    p.mark_refunded(_refund())
    assert p.status == PurchaseStatus.REFUNDED
    assert p.refund.refund_ref == "rfnd_1"
    assert not p.grants_enrollment()
    # refunded purchases still count as settled by the same payment
    assert p.settled_with("pay_1")


def test_refund_cannot_exceed_paid_amount():
    p = _open()
    p.mark_completed("pay_1")
    with pytest.raises(DomainValidationException):
        p.mark_refunded(_refund("2500.00"))


def test_completed_cannot_return_to_pending_or_fail():
    p = _open()
    p.mark_completed("pay_1")
    assert not p.can_transition(PurchaseStatus.PENDING)
    with pytest.raises(IllegalPurchaseTransitionException):
        p.mark_failed()


def test_attach_order_rejects_rebinding():
    p = _open()
    p.attach_order("order_1")
    p.attach_order("order_1")
    with pytest.raises(DomainValidationException):
        p.attach_order("order_2")


def test_refund_policy_window():
    p = _open()
    p.mark_completed("pay_1")
    policy = RefundPolicy(window_days=30)
    policy.ensure_refundable(p)
    assert policy.refund_amount(p) == Decimal("1999.00")
    with pytest.raises(RefundNotAllowedException):
        policy.ensure_refundable(p, now=p.completed_at + timedelta(days=31))
    with pytest.raises(RefundNotAllowedException):
        RefundPolicy(enabled=False).ensure_refundable(p)
