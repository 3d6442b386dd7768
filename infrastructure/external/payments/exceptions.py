"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import PaymentGatewayError
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(PaymentGatewayError):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            message,
            provider=provider,
            code=PaymentCode.PROVIDER_ERROR,
            error_type="PaymentProviderError",
            details=full_details,
        )


class PaymentRecoverableError(PaymentGatewayError):
    """Rate limited or transient upstream failure; safe to retry idempotent calls."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            message,
            provider=provider,
            code=PaymentCode.PROVIDER_RECOVERABLE,
            error_type="PaymentRecoverableError",
            details=full_details,
        )


class PaymentGatewayTimeout(PaymentGatewayError):
    def __init__(self, message: str, *, provider: str, operation: str):
        super().__init__(
            message,
            provider=provider,
            code=PaymentCode.TIMEOUT,
            error_type="PaymentGatewayTimeout",
            details={"operation": operation},
        )
