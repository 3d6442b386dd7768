"""
Razorpay Orders adapter over the REST API (https://razorpay.com/docs/api/).

Notes:
- Auth is HTTP basic with ``key_id:key_secret``.
- Orders carry the amount in the smallest currency unit (paise for INR).
- Webhooks are signed with a dedicated webhook secret: hex HMAC-SHA256 of the
  raw request body in ``X-Razorpay-Signature``.
- Checkout hands the client ``razorpay_order_id|razorpay_payment_id`` signed
  with the key secret; the server recomputes and compares.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    CreateOrder,
    GatewayOrder,
    GatewayPayment,
    PaymentNotification,
    RefundRequest,
    RefundResult,
    WebhookEvent,
    from_minor,
    to_minor,
)
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import InvalidWebhookSignatureException
from infrastructure.external.payments.base import (
    BasePaymentClient,
    constant_time_equals,
    hmac_sha256_hex,
)
from infrastructure.external.payments.exceptions import (
    PaymentGatewayTimeout,
    PaymentProviderError,
    PaymentRecoverableError,
)


logger = get_logger(__name__)

COMPLETION_EVENTS = {"payment.captured", "order.paid"}


class RazorpayClient(BasePaymentClient):
    provider = "razorpay"

    def __init__(
        self,
        *,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            timeouts=payment_settings.timeouts.model_dump(),
            retry={"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff},
        )
        cfg = payment_settings.razorpay
        self._key_id = key_id or cfg.key_id
        self._key_secret = key_secret or cfg.key_secret
        self._webhook_secret = webhook_secret or cfg.webhook_secret
        self._api_base = (api_base or cfg.api_base).rstrip("/")
        self._transport = transport
        if not self._key_id or not self._key_secret:
            raise RuntimeError("RAZORPAY__KEY_ID / RAZORPAY__KEY_SECRET not configured")

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._api_base,
            auth=(self._key_id, self._key_secret),
            timeout=self.timeouts,
            transport=self._transport,
        )

    async def _send(self, method: str, path: str, *, json_body: Optional[dict] = None) -> dict[str, Any]:
        async with self.client() as client:
            resp = await client.request(method, path, json=json_body)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise PaymentRecoverableError(
                f"Razorpay responded {resp.status_code}",
                provider=self.provider,
                provider_code=str(resp.status_code),
            )
        if resp.status_code >= 400:
            error = {}
            try:
                error = (resp.json() or {}).get("error") or {}
            except ValueError:
                pass
            raise PaymentProviderError(
                error.get("description") or f"Razorpay responded {resp.status_code}",
                provider=self.provider,
                provider_code=error.get("code"),
                details={"status_code": resp.status_code},
            )
        return resp.json()

    async def _call(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: Optional[dict] = None,
        idempotent: bool = False,
    ) -> dict[str, Any]:
        try:
            if idempotent:
                return await self._retry(lambda: self._send(method, path, json_body=json_body))
            return await self._send(method, path, json_body=json_body)
        except httpx.TimeoutException as exc:
            raise PaymentGatewayTimeout(
                f"Razorpay {operation} timed out", provider=self.provider, operation=operation
            ) from exc
        except httpx.TransportError as exc:
            raise PaymentProviderError(str(exc) or "transport error", provider=self.provider) from exc

    async def create_order(self, req: CreateOrder) -> GatewayOrder:  # type: ignore[override]
        amount_minor = req.amount_minor
        notes = {
            "purchase_id": str(req.purchase_id),
            "buyer_id": str(req.buyer_id),
            "course_id": str(req.course_id),
        }
        if req.idempotency_key:
            notes["idempotency_key"] = req.idempotency_key
        payload = {
            "amount": amount_minor,
            "currency": req.currency,
            # receipt is unique per purchase attempt
            "receipt": f"purchase_{req.purchase_id}",
            "notes": notes,
        }
        self._log("razorpay_order_create", purchase_id=req.purchase_id, amount_minor=amount_minor)
        order = await self._call("POST", "/orders", operation="create_order", json_body=payload)
        if not order.get("id"):
            raise PaymentProviderError("Invalid order response from Razorpay", provider=self.provider)
        return GatewayOrder(
            order_ref=str(order["id"]),
            amount_minor=int(order.get("amount", 0)),
            currency=str(order.get("currency") or req.currency).upper(),
            provider=self.provider,
            checkout={
                "key_id": self._key_id,
                "order_id": str(order["id"]),
                "amount": int(order.get("amount", 0)),
                "currency": str(order.get("currency") or req.currency).upper(),
                "receipt": order.get("receipt"),
            },
        )

    def verify_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        if not self._webhook_secret:
            raise InvalidWebhookSignatureException(self.provider, "webhook secret not configured")
        signature = self._header(headers, "X-Razorpay-Signature")
        if not signature:
            raise InvalidWebhookSignatureException(self.provider, "missing signature header")
        expected = hmac_sha256_hex(self._webhook_secret, body)
        if not constant_time_equals(expected, signature):
            raise InvalidWebhookSignatureException(self.provider)
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise InvalidWebhookSignatureException(self.provider, "payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise InvalidWebhookSignatureException(self.provider, "payload is not an object")
        event_id = self._header(headers, "X-Razorpay-Event-Id") or hashlib.sha256(body).hexdigest()
        return WebhookEvent(
            id=str(event_id),
            type=str(payload.get("event") or ""),
            provider=self.provider,
            data=payload.get("payload") or {},
            raw_headers=dict(headers),
            raw_body=body,
        )

    def interpret_webhook(self, event: WebhookEvent) -> Optional[PaymentNotification]:  # type: ignore[override]
        if event.type not in COMPLETION_EVENTS:
            # payment.failed: the buyer may retry against the same order
            return None
        payment = (event.data.get("payment") or {}).get("entity") or {}
        order = (event.data.get("order") or {}).get("entity") or {}
        order_ref = payment.get("order_id") or order.get("id")
        payment_ref = payment.get("id")
        if not order_ref or not payment_ref:
            logger.warning(
                "razorpay_webhook_incomplete",
                event_id=event.id,
                event_type=event.type,
            )
            return None
        currency = str(payment.get("currency") or order.get("currency") or "").upper() or None
        amount_minor = payment.get("amount")
        settled = from_minor(int(amount_minor), currency) if amount_minor is not None and currency else None
        return PaymentNotification(
            provider=self.provider,
            kind="completed",
            order_ref=str(order_ref),
            payment_ref=str(payment_ref),
            payment_method=payment.get("method"),
            settled_amount=settled,
            currency=currency,
            event_id=event.id,
        )

    def verify_client_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:  # type: ignore[override]
        expected = hmac_sha256_hex(self._key_secret, f"{order_ref}|{payment_ref}".encode("utf-8"))
        return constant_time_equals(expected, signature)

    async def fetch_payment(self, payment_ref: str) -> GatewayPayment:  # type: ignore[override]
        payment = await self._call(
            "GET", f"/payments/{payment_ref}", operation="fetch_payment", idempotent=True
        )
        return GatewayPayment(
            payment_ref=str(payment.get("id") or payment_ref),
            order_ref=payment.get("order_id"),
            status=self._map_status(str(payment.get("status", ""))),
            provider=self.provider,
            method=payment.get("method"),
            settled_amount_minor=payment.get("amount"),
            currency=str(payment.get("currency") or "").upper() or None,
        )

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        payload = {
            "amount": to_minor(req.amount, req.currency),
            "notes": {"purchase_id": str(req.purchase_id), "reason": req.reason or ""},
        }
        if req.idempotency_key:
            payload["receipt"] = req.idempotency_key[:40]
        self._log("razorpay_refund_create", purchase_id=req.purchase_id, payment_ref=req.payment_ref)
        refund = await self._call(
            "POST", f"/payments/{req.payment_ref}/refund", operation="refund", json_body=payload
        )
        if not refund.get("id"):
            raise PaymentProviderError("Invalid refund response from Razorpay", provider=self.provider)
        return RefundResult(
            refund_ref=str(refund["id"]),
            status=self._map_status(str(refund.get("status", ""))),
            provider=self.provider,
            amount_minor=refund.get("amount"),
        )
