"""领域层业务异常定义，供领域、应用与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


# ---------------------------------------------------------------------------
# NotFound
# ---------------------------------------------------------------------------


class CourseNotFoundException(BusinessException):
    def __init__(self, course_id: int):
        super().__init__(
            code=BusinessCode.COURSE_NOT_FOUND,
            message="Course not found",
            error_type="CourseNotFound",
            details={"course_id": course_id},
        )


class BuyerNotFoundException(BusinessException):
    def __init__(self, buyer_id: int):
        super().__init__(
            code=BusinessCode.BUYER_NOT_FOUND,
            message="Buyer not found",
            error_type="BuyerNotFound",
            details={"buyer_id": buyer_id},
        )


class PurchaseNotFoundException(BusinessException):
    def __init__(self, identifier: str):
        super().__init__(
            code=BusinessCode.PURCHASE_NOT_FOUND,
            message="Purchase not found",
            error_type="PurchaseNotFound",
            details={"identifier": identifier},
        )


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class AlreadyPurchasedException(BusinessException):
    def __init__(self, buyer_id: int, course_id: int):
        super().__init__(
            code=BusinessCode.ALREADY_PURCHASED,
            message="You have already purchased this course",
            error_type="AlreadyPurchased",
            details={"buyer_id": buyer_id, "course_id": course_id},
        )


class AlreadyRefundedException(BusinessException):
    def __init__(self, purchase_id: int):
        super().__init__(
            code=BusinessCode.ALREADY_REFUNDED,
            message="Purchase already refunded",
            error_type="AlreadyRefunded",
            details={"purchase_id": purchase_id},
        )


class IllegalPurchaseTransitionException(BusinessException):
    def __init__(self, purchase_id: Optional[int], current: str, target: str):
        super().__init__(
            code=BusinessCode.ILLEGAL_TRANSITION,
            message=f"Cannot move purchase from {current} to {target}",
            error_type="IllegalTransition",
            details={"purchase_id": purchase_id, "current": current, "target": target},
            field="status",
        )


class RefundNotAllowedException(BusinessException):
    def __init__(self, purchase_id: int, reason: str):
        super().__init__(
            code=BusinessCode.REFUND_NOT_ALLOWED,
            message="Purchase is not eligible for a refund",
            error_type="RefundNotAllowed",
            details={"purchase_id": purchase_id, "reason": reason},
        )


class ReconciliationAnomalyException(BusinessException):
    def __init__(self, purchase_id: Optional[int], reason: str):
        super().__init__(
            code=BusinessCode.RECONCILIATION_ANOMALY,
            message="Payment confirmation conflicts with the recorded purchase",
            error_type="ReconciliationAnomaly",
            details={"purchase_id": purchase_id, "reason": reason},
        )


class DuplicateCompletedPurchaseException(BusinessException):
    """同一 (buyer, course) 已存在 completed 购买记录（由账本唯一索引触发）"""

    def __init__(self, buyer_id: int, course_id: int):
        super().__init__(
            code=BusinessCode.RECONCILIATION_ANOMALY,
            message="A completed purchase already exists for this buyer and course",
            error_type="DuplicateCompletedPurchase",
            details={"buyer_id": buyer_id, "course_id": course_id},
        )


# ---------------------------------------------------------------------------
# Unauthorized
# ---------------------------------------------------------------------------


class NotAuthorizedException(BusinessException):
    def __init__(self, purchase_id: int):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message="You are not allowed to act on this purchase",
            error_type="NotAuthorized",
            details={"purchase_id": purchase_id},
        )


# ---------------------------------------------------------------------------
# VerificationFailed
# ---------------------------------------------------------------------------


class VerificationFailedException(BusinessException):
    """签名/HMAC 校验失败的公共基类（安全事件）"""


class InvalidWebhookSignatureException(VerificationFailedException):
    def __init__(self, provider: str, reason: str = "signature mismatch"):
        super().__init__(
            code=PaymentCode.INVALID_WEBHOOK_SIGNATURE,
            message="Invalid webhook signature",
            error_type="InvalidWebhookSignature",
            details={"provider": provider, "reason": reason},
        )


class PaymentVerificationFailedException(VerificationFailedException):
    def __init__(self, provider: str, reason: str = "signature mismatch"):
        super().__init__(
            code=PaymentCode.PAYMENT_VERIFICATION_FAILED,
            message="Payment verification failed",
            error_type="PaymentVerificationFailed",
            details={"provider": provider, "reason": reason},
        )


# ---------------------------------------------------------------------------
# GatewayError
# ---------------------------------------------------------------------------


class PaymentGatewayError(BusinessException):
    """支付网关调用失败（上游错误或超时），对客户端只返回通用信息"""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        code: int = PaymentCode.PROVIDER_ERROR,
        error_type: str = "PaymentGatewayError",
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
        )


class AmountMismatchException(PaymentGatewayError):
    def __init__(self, provider: str, expected: int, actual: int):
        super().__init__(
            f"Gateway echoed amount {actual} but {expected} was requested",
            provider=provider,
            code=PaymentCode.AMOUNT_MISMATCH,
            error_type="AmountMismatch",
            details={"expected_minor": expected, "actual_minor": actual},
        )


# ---------------------------------------------------------------------------
# InternalInconsistency
# ---------------------------------------------------------------------------


class InternalInconsistencyException(BusinessException):
    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.INTERNAL_INCONSISTENCY,
            message=message,
            error_type="InternalInconsistency",
            details=details,
        )
