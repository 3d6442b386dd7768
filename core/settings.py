"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway credentials live in one place.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    # Applies to idempotent gateway reads only
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class RazorpaySettings(BaseModel):
    key_id: Optional[str] = None
    key_secret: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_base: str = "https://api.razorpay.com/v1"


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    # {course_id} is substituted at checkout time
    success_url: str = "http://localhost:5173/course-progress/{course_id}"
    cancel_url: str = "http://localhost:5173/course-detail/{course_id}"


class RefundSettings(BaseModel):
    enabled: bool = True
    window_days: int = 30


class FanoutSettings(BaseModel):
    inline_attempts: int = 3
    base_backoff: float = 0.1
    max_backoff: float = 1.0
    deferred_retries: int = 5
    deferred_countdown: int = 30


class PaymentSettings(BaseSettings):
    default_provider: str = Field(default="razorpay", validation_alias="PAYMENT__DEFAULT_PROVIDER")
    currency: str = Field(default="INR", validation_alias="PAYMENT__CURRENCY")
    pending_ttl_minutes: int = Field(default=24 * 60, validation_alias="PAYMENT__PENDING_TTL_MINUTES")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    refund: RefundSettings = Field(default_factory=RefundSettings)
    fanout: FanoutSettings = Field(default_factory=FanoutSettings)

    razorpay: RazorpaySettings = Field(default_factory=RazorpaySettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
