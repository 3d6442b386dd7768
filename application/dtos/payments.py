"""
Payment DTOs (Pydantic v2) used at the gateway boundary.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.types import condecimal

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "INR", "USD", "EUR", "GBP", "CNY", "JPY", "KRW", "HKD", "AUD", "CAD", "SGD",
}

# Currencies whose smallest unit is the major unit
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the gateway's smallest currency unit."""
    exponent = currency_exponent(currency)
    return int((Decimal(amount) * (Decimal(10) ** exponent)).to_integral_value())


def from_minor(amount_minor: int, currency: str) -> Decimal:
    exponent = currency_exponent(currency)
    return Decimal(int(amount_minor)) / (Decimal(10) ** exponent)


def _normalize_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class CreateOrder(BaseModel):
    purchase_id: int
    buyer_id: int
    course_id: int
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str = Field(default="INR")
    course_title: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _normalize_currency(v)

    @property
    def amount_minor(self) -> int:
        return to_minor(self.amount, self.currency)


class GatewayOrder(BaseModel):
    order_ref: str
    amount_minor: int
    currency: str
    provider: str
    # Whatever the client needs to complete payment (hosted URL or order params)
    checkout: dict[str, Any] = Field(default_factory=dict)


class GatewayPayment(BaseModel):
    payment_ref: str
    order_ref: Optional[str] = None
    status: str
    provider: str
    method: Optional[str] = None
    settled_amount_minor: Optional[int] = None
    currency: Optional[str] = None


class RefundRequest(BaseModel):
    purchase_id: int
    payment_ref: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str = Field(default="INR")
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency_refund(cls, v: str) -> str:
        return _normalize_currency(v)


class RefundResult(BaseModel):
    refund_ref: str
    status: str
    provider: str
    amount_minor: Optional[int] = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    provider: str
    data: dict[str, Any]
    # raw fields for traceability (optional)
    raw_headers: Optional[dict[str, Any]] = None
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class PaymentNotification(BaseModel):
    """A verified, provider-neutral statement about one gateway order."""

    provider: str
    kind: Literal["completed", "failed"]
    order_ref: str
    payment_ref: Optional[str] = None
    payment_method: Optional[str] = None
    settled_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    event_id: Optional[str] = None
    reason: Optional[str] = None
