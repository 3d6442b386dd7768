"""
Payment gateway codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    AMOUNT_MISMATCH = 60004

    # Confirmation authenticity (61xxx), always logged as security events
    INVALID_WEBHOOK_SIGNATURE = 61001
    PAYMENT_VERIFICATION_FAILED = 61002


# Provider -> internal status mapping
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        # Checkout Session payment_status / status
        "paid": "succeeded",
        "no_payment_required": "succeeded",
        "unpaid": "pending",
        "open": "pending",
        "complete": "succeeded",
        "expired": "failed",
        # PaymentIntent status
        "requires_payment_method": "pending",
        "requires_confirmation": "pending",
        "requires_capture": "pending",
        "processing": "pending",
        # Refund / PaymentIntent terminal status
        "succeeded": "succeeded",
        "pending": "pending",
        "requires_action": "pending",
        "failed": "failed",
        "canceled": "failed",
    },
    "razorpay": {
        # Order status
        "created": "pending",
        "attempted": "pending",
        # Payment status
        "authorized": "pending",
        "captured": "succeeded",
        "refunded": "refunded",
        "failed": "failed",
        # Refund status
        "pending": "pending",
        "processed": "succeeded",
    },
}
