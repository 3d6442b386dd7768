from decimal import Decimal

import pytest

from application.dtos.payments import CreateOrder, from_minor, to_minor
from infrastructure.external.payments.base import BasePaymentClient, constant_time_equals


class _MapClient(BasePaymentClient):
    provider = "stripe"


class _RzpMapClient(BasePaymentClient):
    provider = "razorpay"


def test_provider_status_mapping():
    c = _MapClient()
    assert c._map_status("succeeded") == "succeeded"
    assert c._map_status("processing") == "pending"
    assert c._map_status("requires_action") == "pending"
    r = _RzpMapClient()
    assert r._map_status("captured") == "succeeded"
    assert r._map_status("refunded") == "refunded"
    assert r._map_status("processed") == "succeeded"


@pytest.mark.parametrize(
    "amount,currency,minor",
    [
        (Decimal("1999"), "INR", 199900),
        (Decimal("19.99"), "usd", 1999),
        (Decimal("1500"), "JPY", 1500),
    ],
)
def test_minor_units(amount, currency, minor):
    assert to_minor(amount, currency) == minor
    assert from_minor(minor, currency) == amount


def test_create_order_rejects_unknown_currency_and_zero_amount():
    with pytest.raises(ValueError):
        CreateOrder(purchase_id=1, buyer_id=1, course_id=1, amount=Decimal("10"), currency="XYZ")
    with pytest.raises(ValueError):
        CreateOrder(purchase_id=1, buyer_id=1, course_id=1, amount=Decimal("0"), currency="INR")


def test_constant_time_equals():
    assert constant_time_equals("abc", "abc")
    assert not constant_time_equals("abc", "abd")
    assert not constant_time_equals("abc", None)


def test_header_lookup_is_case_insensitive():
    assert BasePaymentClient._header({"X-Razorpay-Signature": "s"}, "x-razorpay-signature") == "s"
    assert BasePaymentClient._header({}, "Stripe-Signature") is None
