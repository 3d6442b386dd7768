import pytest

from application.services.checkout_service import CheckoutService
from domain.common.exceptions import (
    AlreadyPurchasedException,
    AmountMismatchException,
    BuyerNotFoundException,
    CourseNotFoundException,
    PaymentGatewayError,
)
from domain.purchase.entity import PurchaseStatus
from infrastructure.external.payments.exceptions import PaymentGatewayTimeout
from tests.fakes import completed_purchase, pending_purchase


@pytest.mark.asyncio
async def test_checkout_creates_pending_purchase_with_minor_units(store, gateway):
    svc = CheckoutService(store.uow_factory, gateway)
    result = await svc.initiate(7, 42)

    assert result.amount_minor == 199900
    assert result.order_ref == "order_1"
    assert result.course.title == "Python 101"
    req = gateway.orders[0]
    assert req.amount_minor == 199900
    assert req.currency == "INR"
    assert isinstance(req.idempotency_key, str) and len(req.idempotency_key) == 64

    stored = store.purchase(result.purchase_id)
    assert stored.status == PurchaseStatus.PENDING
    assert stored.gateway_order_ref == "order_1"


@pytest.mark.asyncio
async def test_zero_decimal_currency_is_not_scaled(store, gateway):
    store.add_course(43, price="1500", currency="JPY")
    result = await CheckoutService(store.uow_factory, gateway).initiate(7, 43)
    assert result.amount_minor == 1500


@pytest.mark.asyncio
async def test_unknown_buyer_or_course_rejected_before_gateway(store, gateway):
    svc = CheckoutService(store.uow_factory, gateway)
    with pytest.raises(BuyerNotFoundException):
        await svc.initiate(99, 42)
    with pytest.raises(CourseNotFoundException):
        await svc.initiate(7, 999)
    assert gateway.orders == []
    assert store.purchases == {}


@pytest.mark.asyncio
async def test_already_purchased_course_rejected(store, gateway):
    completed_purchase(store)
    with pytest.raises(AlreadyPurchasedException):
        await CheckoutService(store.uow_factory, gateway).initiate(7, 42)
    assert gateway.orders == []


@pytest.mark.asyncio
async def test_gateway_failure_marks_purchase_failed(store, gateway):
    gateway.order_error = PaymentGatewayTimeout("timed out", provider="razorpay", operation="create_order")
    with pytest.raises(PaymentGatewayTimeout):
        await CheckoutService(store.uow_factory, gateway).initiate(7, 42)

    (purchase,) = store.purchases.values()
    assert purchase.status == PurchaseStatus.FAILED
    assert purchase.failure_reason == "gateway_error:PaymentGatewayTimeout"
    assert purchase.gateway_order_ref is None


@pytest.mark.asyncio
async def test_amount_echo_mismatch_aborts_checkout(store, gateway):
    gateway.echo_amount_minor = 1999
    with pytest.raises(AmountMismatchException):
        await CheckoutService(store.uow_factory, gateway).initiate(7, 42)

    (purchase,) = store.purchases.values()
    assert purchase.status == PurchaseStatus.FAILED
    assert purchase.failure_reason == "amount_mismatch"


@pytest.mark.asyncio
async def test_reused_order_ref_aborts_checkout(store, gateway):
    pending_purchase(store, buyer_id=8, order_ref="order_1")
    with pytest.raises(PaymentGatewayError):
        await CheckoutService(store.uow_factory, gateway).initiate(7, 42)

    mine = [p for p in store.purchases.values() if p.buyer_id == 7]
    assert mine[0].status == PurchaseStatus.FAILED
    assert mine[0].failure_reason == "duplicate_order_ref"


@pytest.mark.asyncio
async def test_retried_checkout_opens_new_attempt(store, gateway):
    svc = CheckoutService(store.uow_factory, gateway)
    first = await svc.initiate(7, 42)
    gateway.order_ref = "order_2"
    second = await svc.initiate(7, 42)
    assert first.purchase_id != second.purchase_id
    assert gateway.orders[0].idempotency_key != gateway.orders[1].idempotency_key
