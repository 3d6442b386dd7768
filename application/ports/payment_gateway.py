"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CreateOrder,
    GatewayOrder,
    GatewayPayment,
    PaymentNotification,
    RefundRequest,
    RefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Implementations should be async and side-effect free beyond IO.
    ``verify_webhook`` must authenticate the raw body before anything is parsed.
    """

    provider: str

    async def create_order(self, req: CreateOrder) -> GatewayOrder: ...

    def verify_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...

    def interpret_webhook(self, event: WebhookEvent) -> Optional[PaymentNotification]: ...

    def verify_client_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool: ...

    async def fetch_payment(self, payment_ref: str) -> GatewayPayment: ...

    async def refund(self, req: RefundRequest) -> RefundResult: ...

    async def aclose(self) -> None: ...
