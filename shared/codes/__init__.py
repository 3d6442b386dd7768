"""
Shared business codes used across layers (Domain/Core/API).

This package exposes BusinessCode at `shared.codes` and keeps
gateway-specific codes under `shared.codes.payment_codes`.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    """Unified business status codes (single source of truth)."""

    # Success
    SUCCESS = 0

    # Parameter errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_MISSING = 10001
    PARAM_TYPE_ERROR = 10002
    PARAM_VALIDATION_ERROR = 10003

    # Business errors (2xxxx)
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006  # Generic resource not found

    # Not found (201xx)
    COURSE_NOT_FOUND = 20101
    BUYER_NOT_FOUND = 20102
    PURCHASE_NOT_FOUND = 20103

    # Conflicts with current purchase state (202xx)
    ALREADY_PURCHASED = 20201
    ALREADY_REFUNDED = 20202
    ILLEGAL_TRANSITION = 20203
    REFUND_NOT_ALLOWED = 20204
    RECONCILIATION_ANOMALY = 20205

    # Authorization errors (3xxxx)
    PERMISSION_ERROR = 30000
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002
    TOKEN_INVALID = 30003
    TOKEN_EXPIRED = 30004

    # System errors (4xxxx)
    SYSTEM_ERROR = 40000
    DATABASE_ERROR = 40001
    NETWORK_ERROR = 40002
    SERVICE_UNAVAILABLE = 40003
    INTERNAL_INCONSISTENCY = 40004


__all__ = ["BusinessCode"]
