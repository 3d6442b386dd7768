"""
Stripe Checkout Sessions adapter using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; every call runs in a worker thread bounded by the
  configured total timeout.
- Idempotency keys are supplied via the ``idempotency_key`` kwarg.
- Webhook verification uses ``stripe.Webhook.construct_event`` with the
  ``Stripe-Signature`` header.
- The Checkout Session id is the gateway order reference; the PaymentIntent id
  becomes the payment reference once the session is paid.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import stripe

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
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentGatewayTimeout,
    PaymentProviderError,
    PaymentRecoverableError,
)
from domain.common.exceptions import InvalidWebhookSignatureException
from core.settings import payment_settings
from core.logging_config import get_logger


logger = get_logger(__name__)

COMPLETED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
FAILED_EVENTS = {
    "checkout.session.async_payment_failed": "async_payment_failed",
    "checkout.session.expired": "checkout_session_expired",
}


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        super().__init__(
            timeouts=payment_settings.timeouts.model_dump(),
            retry={"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff},
        )
        cfg = payment_settings.stripe
        secret_key = secret_key or cfg.secret_key
        if not secret_key:
            raise RuntimeError("STRIPE__SECRET_KEY not configured")
        self._webhook_secret = webhook_secret or cfg.webhook_secret
        self._success_url = cfg.success_url
        self._cancel_url = cfg.cancel_url
        # Configure module-level key for compatibility across SDK variants
        stripe.api_key = secret_key

    async def _call(self, fn: Callable[[], Any], *, operation: str):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.total_timeout)
        except asyncio.TimeoutError as exc:
            raise PaymentGatewayTimeout(
                f"Stripe {operation} timed out", provider=self.provider, operation=operation
            ) from exc
        except (stripe.RateLimitError, stripe.APIConnectionError) as exc:
            raise PaymentRecoverableError(
                str(exc), provider=self.provider, provider_code=getattr(exc, "code", None)
            ) from exc
        except stripe.StripeError as exc:
            raise PaymentProviderError(
                str(exc), provider=self.provider, provider_code=getattr(exc, "code", None)
            ) from exc

    async def create_order(self, req: CreateOrder) -> GatewayOrder:  # type: ignore[override]
        metadata = {k: str(v) for k, v in (req.metadata or {}).items()}
        metadata.update({
            "purchase_id": str(req.purchase_id),
            "course_id": str(req.course_id),
            "buyer_id": str(req.buyer_id),
        })
        amount_minor = req.amount_minor

        session = await self._call(
            lambda: stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": req.currency.lower(),
                            "product_data": {"name": req.course_title or f"Course {req.course_id}"},
                            "unit_amount": amount_minor,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=self._success_url.format(course_id=req.course_id),
                cancel_url=self._cancel_url.format(course_id=req.course_id),
                client_reference_id=str(req.purchase_id),
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                idempotency_key=req.idempotency_key,
            ),
            operation="create_order",
        )
        if not session.get("url"):
            raise PaymentProviderError("Failed to create checkout session", provider=self.provider)
        self._log("stripe_session_created", purchase_id=req.purchase_id, session_id=session["id"])
        currency = str(session.get("currency") or req.currency).upper()
        return GatewayOrder(
            order_ref=str(session["id"]),
            amount_minor=int(session.get("amount_total") or 0),
            currency=currency,
            provider=self.provider,
            checkout={"checkout_url": session["url"], "session_id": str(session["id"])},
        )

    def verify_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        secret = self._webhook_secret
        if not secret:
            raise InvalidWebhookSignatureException(self.provider, "webhook secret not configured")
        sig = self._header(headers, "Stripe-Signature")
        if not sig:
            raise InvalidWebhookSignatureException(self.provider, "missing signature header")
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=secret,
                tolerance=payment_settings.webhook.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhookSignatureException(self.provider, "signature mismatch") from exc
        except ValueError as exc:
            raise InvalidWebhookSignatureException(self.provider, "payload is not valid JSON") from exc
        # Body is authenticated at this point
        event = json.loads(body)
        return WebhookEvent(
            id=str(event.get("id")),
            type=str(event.get("type")),
            provider=self.provider,
            data=event.get("data", {}) or {},
            raw_headers=dict(headers),
            raw_body=body,
        )

    def interpret_webhook(self, event: WebhookEvent) -> Optional[PaymentNotification]:  # type: ignore[override]
        session = event.data.get("object") or {}
        session_id = session.get("id")
        if not session_id:
            return None

        if event.type in FAILED_EVENTS:
            return PaymentNotification(
                provider=self.provider,
                kind="failed",
                order_ref=str(session_id),
                event_id=event.id,
                reason=FAILED_EVENTS[event.type],
            )
        if event.type not in COMPLETED_EVENTS:
            return None
        # Delayed payment methods complete the session while still unpaid
        if session.get("payment_status") != "paid":
            logger.info("stripe_session_awaiting_payment", session_id=session_id, event_id=event.id)
            return None
        payment_ref = session.get("payment_intent")
        if not payment_ref:
            logger.warning("stripe_session_without_payment_intent", session_id=session_id, event_id=event.id)
            return None

        currency = str(session.get("currency") or "").upper() or None
        amount_total = session.get("amount_total")
        method_types = session.get("payment_method_types") or []
        return PaymentNotification(
            provider=self.provider,
            kind="completed",
            order_ref=str(session_id),
            payment_ref=str(payment_ref),
            payment_method=method_types[0] if method_types else "stripe",
            settled_amount=from_minor(int(amount_total), currency) if amount_total is not None and currency else None,
            currency=currency,
            event_id=event.id,
        )

    def verify_client_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:  # type: ignore[override]
        # Hosted checkout has no client-relayed signature
        return False

    async def fetch_payment(self, payment_ref: str) -> GatewayPayment:  # type: ignore[override]
        pi = await self._retry(
            lambda: self._call(lambda: stripe.PaymentIntent.retrieve(payment_ref), operation="fetch_payment")
        )
        sessions = await self._retry(
            lambda: self._call(
                lambda: stripe.checkout.Session.list(payment_intent=payment_ref, limit=1),
                operation="fetch_payment",
            )
        )
        data = sessions.get("data") or []
        method_types = pi.get("payment_method_types") or []
        return GatewayPayment(
            payment_ref=str(pi["id"]),
            order_ref=str(data[0]["id"]) if data else None,
            status=self._map_status(str(pi.get("status", ""))),
            provider=self.provider,
            method=method_types[0] if method_types else None,
            settled_amount_minor=pi.get("amount_received") or pi.get("amount"),
            currency=str(pi.get("currency") or "").upper() or None,
        )

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        refund = await self._call(
            lambda: stripe.Refund.create(
                payment_intent=req.payment_ref,
                amount=to_minor(req.amount, req.currency),
                reason="requested_by_customer",
                metadata={"purchase_id": str(req.purchase_id), "reason": req.reason or ""},
                idempotency_key=req.idempotency_key,
            ),
            operation="refund",
        )
        return RefundResult(
            refund_ref=str(refund["id"]),
            status=self._map_status(str(refund.get("status", ""))),
            provider=self.provider,
            amount_minor=refund.get("amount"),
        )
