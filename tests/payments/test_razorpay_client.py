import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import CreateOrder, RefundRequest
from domain.common.exceptions import InvalidWebhookSignatureException
from infrastructure.external.payments.exceptions import PaymentProviderError, PaymentRecoverableError
from infrastructure.external.payments.razorpay_client import RazorpayClient


WEBHOOK_SECRET = "whsec_rzp"
KEY_SECRET = "rzp_secret"


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _client(handler=None) -> RazorpayClient:
    transport = httpx.MockTransport(handler) if handler else None
    return RazorpayClient(
        key_id="rzp_test_key",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        transport=transport,
    )


def _captured(amount: int) -> bytes:
    return json.dumps({
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": "pay_1",
                    "order_id": "order_1",
                    "amount": amount,
                    "currency": "INR",
                    "method": "upi",
                    "status": "captured",
                }
            }
        },
    }).encode()


def test_signed_webhook_is_interpreted():
    gw = _client()
    body = _captured(199900)
    event = gw.verify_webhook({"X-Razorpay-Signature": _sign(WEBHOOK_SECRET, body)}, body)
    n = gw.interpret_webhook(event)
    assert n.kind == "completed"
    assert n.order_ref == "order_1"
    assert n.payment_ref == "pay_1"
    assert n.settled_amount == Decimal("1999.00")
    assert n.payment_method == "upi"


def test_tampered_body_fails_verification():
    gw = _client()
    signature = _sign(WEBHOOK_SECRET, _captured(100))
    with pytest.raises(InvalidWebhookSignatureException):
        gw.verify_webhook({"x-razorpay-signature": signature}, _captured(500))


def test_missing_signature_or_secret_rejected():
    body = _captured(100)
    with pytest.raises(InvalidWebhookSignatureException):
        _client().verify_webhook({}, body)
    gw = _client()
    gw._webhook_secret = None
    with pytest.raises(InvalidWebhookSignatureException):
        gw.verify_webhook({"X-Razorpay-Signature": _sign(WEBHOOK_SECRET, body)}, body)


def test_non_json_body_rejected_after_signature():
    body = b"not json"
    with pytest.raises(InvalidWebhookSignatureException):
        _client().verify_webhook({"X-Razorpay-Signature": _sign(WEBHOOK_SECRET, body)}, body)


def test_payment_failed_event_is_ignored():
    gw = _client()
    body = json.dumps({"event": "payment.failed", "payload": {}}).encode()
    event = gw.verify_webhook({"X-Razorpay-Signature": _sign(WEBHOOK_SECRET, body)}, body)
    assert gw.interpret_webhook(event) is None


def test_client_signature_covers_order_and_payment():
    gw = _client()
    good = _sign(KEY_SECRET, b"order_1|pay_1")
    assert gw.verify_client_signature("order_1", "pay_1", good)
    assert not gw.verify_client_signature("order_1", "pay_2", good)
    assert not gw.verify_client_signature("order_1", "pay_1", "")


def test_missing_credentials_rejected(monkeypatch):
    from core.settings import payment_settings

    monkeypatch.setattr(payment_settings.razorpay, "key_id", None)
    monkeypatch.setattr(payment_settings.razorpay, "key_secret", None)
    with pytest.raises(RuntimeError):
        RazorpayClient()


@pytest.mark.asyncio
async def test_create_order_sends_minor_units():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_1", "amount": 199900, "currency": "INR", "receipt": "purchase_5"})

    gw = _client(handler)
    order = await gw.create_order(
        CreateOrder(purchase_id=5, buyer_id=7, course_id=42, amount=Decimal("1999.00"), currency="INR")
    )
    await gw.aclose()
    assert seen["path"].endswith("/orders")
    assert seen["body"]["amount"] == 199900
    assert seen["body"]["receipt"] == "purchase_5"
    assert order.order_ref == "order_1"
    assert order.amount_minor == 199900
    assert order.checkout["key_id"] == "rzp_test_key"


@pytest.mark.asyncio
async def test_provider_error_uses_error_description():
    def handler(request):
        return httpx.Response(400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too low"}})

    gw = _client(handler)
    with pytest.raises(PaymentProviderError) as exc:
        await gw.create_order(
            CreateOrder(purchase_id=5, buyer_id=7, course_id=42, amount=Decimal("0.50"), currency="INR")
        )
    assert exc.value.message == "amount too low"


@pytest.mark.asyncio
async def test_create_order_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    gw = _client(handler)
    with pytest.raises(PaymentRecoverableError):
        await gw.create_order(
            CreateOrder(purchase_id=5, buyer_id=7, course_id=42, amount=Decimal("10"), currency="INR")
        )
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fetch_payment_retries_transient_errors():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={
            "id": "pay_1", "order_id": "order_1", "status": "captured",
            "amount": 199900, "currency": "INR", "method": "card",
        })

    gw = _client(handler)
    payment = await gw.fetch_payment("pay_1")
    assert len(calls) == 2
    assert payment.status == "succeeded"
    assert payment.order_ref == "order_1"
    assert payment.settled_amount_minor == 199900


@pytest.mark.asyncio
async def test_refund_posts_to_payment():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "rfnd_1", "status": "processed", "amount": 199900})

    gw = _client(handler)
    result = await gw.refund(
        RefundRequest(purchase_id=5, payment_ref="pay_1", amount=Decimal("1999.00"), currency="INR",
                      idempotency_key="refund-5")
    )
    assert seen["path"].endswith("/payments/pay_1/refund")
    assert seen["body"]["amount"] == 199900
    assert seen["body"]["receipt"] == "refund-5"
    assert result.refund_ref == "rfnd_1"
    assert result.status == "succeeded"
