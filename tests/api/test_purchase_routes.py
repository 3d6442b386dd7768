from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from api import dependencies as deps
from application.services.checkout_service import CheckoutService
from application.services.enrollment_service import EnrollmentFanout
from application.services.payment_verifier import PaymentVerifier
from application.services.purchase_query_service import PurchaseQueryService
from application.services.reconciliation_service import ReconciliationEngine
from application.services.refund_service import RefundOrchestrator
from core.config import settings
from domain.purchase.entity import PurchaseStatus
from main import app
from tests.fakes import completed_purchase, completion, pending_purchase


def _token(sub="7", **claims):
    payload = {"sub": sub, "exp": datetime.now(timezone.utc) + timedelta(minutes=5), **claims}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _auth(sub="7"):
    return {"Authorization": f"Bearer {_token(sub)}"}


@pytest.fixture
def client(store, gateway):
    fanout = EnrollmentFanout(store.uow_factory, inline_attempts=1, base_backoff=0, max_backoff=0)
    engine = ReconciliationEngine(store.uow_factory, fanout, gateway=gateway)
    app.dependency_overrides[deps.get_checkout_service] = lambda: CheckoutService(store.uow_factory, gateway)
    app.dependency_overrides[deps.get_payment_verifier] = lambda: PaymentVerifier(gateway, engine)
    app.dependency_overrides[deps.get_refund_orchestrator] = lambda: RefundOrchestrator(store.uow_factory, gateway, fanout)
    app.dependency_overrides[deps.get_purchase_query_service] = lambda: PurchaseQueryService(store.uow_factory)
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "healthy"
    assert data["database"] is True
    assert data["payment_gateway"] is None
    assert resp.headers["X-Request-ID"]


def test_checkout_requires_bearer_token(client):
    resp = client.post("/api/v1/purchases/checkout", json={"course_id": 42})
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"

    expired = jwt.encode(
        {"sub": "7", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM,
    )
    resp = client.post(
        "/api/v1/purchases/checkout", json={"course_id": 42}, headers={"Authorization": f"Bearer {expired}"}
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["type"] == "TokenExpired"


def test_checkout_returns_order(client, gateway):
    resp = client.post("/api/v1/purchases/checkout", json={"course_id": 42}, headers=_auth())
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["order_ref"] == "order_1"
    assert data["amount_minor"] == 199900
    assert data["course"]["title"] == "Python 101"
    assert gateway.orders[0].buyer_id == 7


def test_checkout_validation_errors_are_400(client):
    resp = client.post("/api/v1/purchases/checkout", json={"course_id": 0}, headers=_auth())
    assert resp.status_code == 400
    resp = client.post("/api/v1/purchases/checkout", json={"course_id": 999}, headers=_auth())
    assert resp.status_code == 404


def test_checkout_twice_after_completion_conflicts(client, store):
    completed_purchase(store)
    resp = client.post("/api/v1/purchases/checkout", json={"course_id": 42}, headers=_auth())
    assert resp.status_code == 409


def test_verify_payment_accepts_gateway_field_names(client, store, gateway):
    from application.dtos.payments import GatewayPayment

    p = pending_purchase(store)
    gateway.payment = GatewayPayment(
        payment_ref="pay_1", order_ref="order_1", status="succeeded", provider="razorpay",
        settled_amount_minor=199900, currency="INR",
    )
    resp = client.post(
        "/api/v1/purchases/verify-payment",
        json={
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "good-signature",
        },
        headers=_auth(),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "applied"
    assert store.purchase(p.id).status == PurchaseStatus.COMPLETED



def test_verify_payment_for_another_buyers_order_is_403(client, store, gateway):
    from application.dtos.payments import GatewayPayment

    p = pending_purchase(store)
    gateway.payment = GatewayPayment(payment_ref="pay_1", order_ref="order_1", status="succeeded", provider="razorpay")
    resp = client.post(
        "/api/v1/purchases/verify-payment",
        json={"order_ref": "order_1", "payment_ref": "pay_1", "signature": "good-signature"},
        headers=_auth("8"),
    )
    assert resp.status_code == 403
    assert store.purchase(p.id).status == PurchaseStatus.PENDING

def test_verify_payment_with_forged_signature_is_400_without_details(client, store):
    pending_purchase(store)
    resp = client.post(
        "/api/v1/purchases/verify-payment",
        json={"order_ref": "order_1", "payment_ref": "pay_1", "signature": "forged"},
        headers=_auth(),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["details"] is None


def test_verify_payment_anomaly_is_409(client, store, gateway):
    from application.dtos.payments import GatewayPayment

    completed_purchase(store, payment_ref="pay_0")
    gateway.payment = GatewayPayment(payment_ref="pay_1", order_ref="order_1", status="succeeded", provider="razorpay")
    resp = client.post(
        "/api/v1/purchases/verify-payment",
        json={"order_ref": "order_1", "payment_ref": "pay_1", "signature": "good-signature"},
        headers=_auth(),
    )
    assert resp.status_code == 409


def test_webhook_acknowledges_and_applies(client, store, gateway):
    p = pending_purchase(store)
    gateway.notification = completion()
    resp = client.post(
        "/api/v1/purchases/webhook",
        content=b'{"event": "payment.captured"}',
        headers={"content-type": "application/json", "x-test-signature": "valid"},
    )
    assert resp.status_code == 200
    body = resp.json()["data"]
    assert body["outcome"] == "applied"
    assert body["anomaly"] is False
    assert store.purchase(p.id).status == PurchaseStatus.COMPLETED


def test_webhook_anomaly_still_acknowledged(client, store, gateway):
    completed_purchase(store, payment_ref="pay_0")
    gateway.notification = completion()
    resp = client.post(
        "/api/v1/purchases/webhook",
        content=b"{}",
        headers={"content-type": "application/json", "x-test-signature": "valid"},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["anomaly"] is True


def test_webhook_rejects_bad_signature_and_content_type(client):
    resp = client.post(
        "/api/v1/purchases/webhook",
        content=b"{}",
        headers={"content-type": "application/json", "x-test-signature": "forged"},
    )
    assert resp.status_code == 400
    resp = client.post(
        "/api/v1/purchases/webhook",
        content=b"a=b",
        headers={"content-type": "application/x-www-form-urlencoded", "x-test-signature": "valid"},
    )
    assert resp.status_code == 400


def test_webhook_ip_allowlist(client, store, gateway, monkeypatch):
    from core.settings import payment_settings

    p = pending_purchase(store)
    gateway.notification = completion()
    monkeypatch.setattr(payment_settings.webhook, "ip_allowlist", ["52.66.0.0/16"])
    resp = client.post(
        "/api/v1/purchases/webhook",
        content=b"{}",
        headers={"content-type": "application/json", "x-test-signature": "valid"},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["received"] is False
    assert store.purchase(p.id).status == PurchaseStatus.PENDING


def test_refund_and_status_queries(client, store):
    p = completed_purchase(store)
    store.enrollments[(7, 42)] = p.completed_at

    resp = client.get("/api/v1/purchases/purchase-status/42", headers=_auth())
    assert resp.status_code == 200
    assert resp.json()["data"]["purchased"] is True
    assert resp.json()["data"]["enrolled"] is True

    resp = client.get("/api/v1/purchases/purchased-courses", headers=_auth())
    assert [c["course_id"] for c in resp.json()["data"]] == [42]

    resp = client.post("/api/v1/purchases/refund", json={"purchase_id": p.id}, headers=_auth("8"))
    assert resp.status_code == 403

    resp = client.post("/api/v1/purchases/refund", json={"purchase_id": p.id, "reason": "duplicate"}, headers=_auth())
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "refunded"

    resp = client.post("/api/v1/purchases/refund", json={"purchase_id": p.id}, headers=_auth())
    assert resp.status_code == 409

    resp = client.get("/api/v1/purchases/purchase-status/42", headers=_auth())
    assert resp.json()["data"]["status"] == "refunded"
    assert resp.json()["data"]["enrolled"] is False


def test_gateway_failure_returns_generic_502(client, store, gateway):
    from infrastructure.external.payments.exceptions import PaymentProviderError

    gateway.order_error = PaymentProviderError("key_id rzp_live_xxx rejected", provider="razorpay")
    resp = client.post("/api/v1/purchases/checkout", json={"course_id": 42}, headers=_auth())
    assert resp.status_code == 502
    body = resp.json()
    assert body["message"] == "Payment provider unavailable, please retry later"
    assert "rzp_live" not in resp.text
    assert [p.status for p in store.purchases.values()] == [PurchaseStatus.FAILED]


def test_routes_registered():
    paths = {route.path for route in app.routes}
    for path in (
        "/api/v1/purchases/checkout",
        "/api/v1/purchases/webhook",
        "/api/v1/purchases/verify-payment",
        "/api/v1/purchases/refund",
        "/api/v1/purchases/purchase-status/{course_id}",
        "/api/v1/purchases/purchased-courses",
    ):
        assert path in paths
