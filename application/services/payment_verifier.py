"""
Payment confirmation authenticity gate.

Both delivery paths end in ReconciliationEngine.apply, and neither reaches it
before the gateway-specific signature check has passed:
- webhook: signature over the raw body, verified by the adapter before parsing;
- client-relayed: HMAC over ``order_ref|payment_ref``, then the payment is
  re-read from the gateway so method and settled amount come from the provider,
  never from the client.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from application.dtos.payments import PaymentNotification, WebhookEvent, from_minor
from application.ports.payment_gateway import PaymentGateway
from application.services.reconciliation_service import (
    ReconciliationEngine,
    ReconciliationResult,
)
from core.logging_config import get_logger
from domain.common.exceptions import PaymentVerificationFailedException


logger = get_logger(__name__)

# Only captured money backs a completion; authorized or created payments stay pending
_CAPTURED_STATUS = "succeeded"


@dataclass
class WebhookReceipt:
    event: WebhookEvent
    result: Optional[ReconciliationResult] = None


class PaymentVerifier:
    def __init__(self, gateway: PaymentGateway, engine: ReconciliationEngine) -> None:
        self.gateway = gateway
        self._engine = engine

    async def verify_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookReceipt:
        event = self.gateway.verify_webhook(headers, body)
        logger.info(
            "payment_webhook_verified",
            provider=self.gateway.provider,
            event_type=event.type,
            event_id=event.id,
        )
        notification = self.gateway.interpret_webhook(event)
        if notification is None:
            logger.info(
                "payment_webhook_ignored",
                provider=self.gateway.provider,
                event_type=event.type,
                event_id=event.id,
            )
            return WebhookReceipt(event=event)
        result = await self._engine.apply(notification)
        logger.info(
            "payment_webhook_reconciled",
            provider=self.gateway.provider,
            event_id=event.id,
            order_ref=notification.order_ref,
            outcome=result.outcome.value,
        )
        return WebhookReceipt(event=event, result=result)

    async def verify_client_confirmation(
        self,
        order_ref: str,
        payment_ref: str,
        signature: str,
        *,
        buyer_id: Optional[int] = None,
    ) -> ReconciliationResult:
        """buyer_id 给定时，订单必须属于该买家（否则 403）"""
        provider = self.gateway.provider
        if not self.gateway.verify_client_signature(order_ref, payment_ref, signature):
            raise PaymentVerificationFailedException(provider)

        payment = await self.gateway.fetch_payment(payment_ref)
        if payment.order_ref != order_ref:
            raise PaymentVerificationFailedException(provider, "payment does not belong to order")
        if payment.status != _CAPTURED_STATUS:
            raise PaymentVerificationFailedException(provider, f"payment is {payment.status}")

        settled = None
        if payment.settled_amount_minor is not None and payment.currency:
            settled = from_minor(payment.settled_amount_minor, payment.currency)
        notification = PaymentNotification(
            provider=provider,
            kind="completed",
            order_ref=order_ref,
            payment_ref=payment_ref,
            payment_method=payment.method,
            settled_amount=settled,
            currency=payment.currency,
        )
        result = await self._engine.apply(notification, buyer_id=buyer_id)
        logger.info(
            "payment_client_confirmation_reconciled",
            provider=provider,
            order_ref=order_ref,
            outcome=result.outcome.value,
        )
        return result
