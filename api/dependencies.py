"""
API依赖项 - 买家认证与服务装配
"""
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import jwt
import structlog

from application.ports.payment_gateway import PaymentGateway
from application.services.checkout_service import CheckoutService
from application.services.enrollment_service import EnrollmentFanout
from application.services.payment_verifier import PaymentVerifier
from application.services.purchase_query_service import PurchaseQueryService
from application.services.reconciliation_service import ReconciliationEngine
from application.services.refund_service import RefundOrchestrator
from core.config import settings
from core.exceptions import TokenExpiredException, UnauthorizedException
from core.settings import payment_settings
from domain.common.exceptions import PaymentGatewayError
from domain.purchase.policy import RefundPolicy
from infrastructure.tasks.utils.dispatcher import TaskDispatcher
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


# HTTP Bearer：令牌由上游身份服务签发，这里只做校验
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token issued by the identity service",
    auto_error=False,
)


async def get_current_buyer_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> int:
    """解析访问令牌，sub 即买家ID"""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedException("Missing bearer token")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredException()
    except jwt.InvalidTokenError:
        raise UnauthorizedException("Invalid bearer token")

    try:
        buyer_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise UnauthorizedException("Invalid token subject")

    structlog.contextvars.bind_contextvars(buyer_id=buyer_id)
    return buyer_id


async def get_payment_gateway(request: Request) -> PaymentGateway:
    """应用启动时构建的网关客户端（进程内共享连接池）"""
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        raise PaymentGatewayError(
            "Payment gateway is not configured",
            provider=payment_settings.default_provider,
        )
    return gateway


def _fanout() -> EnrollmentFanout:
    cfg = payment_settings.fanout
    return EnrollmentFanout(
        SQLAlchemyUnitOfWork,
        scheduler=TaskDispatcher(),
        inline_attempts=cfg.inline_attempts,
        base_backoff=cfg.base_backoff,
        max_backoff=cfg.max_backoff,
        deferred_countdown=cfg.deferred_countdown,
    )


async def get_fanout() -> EnrollmentFanout:
    return _fanout()


async def get_reconciliation_engine(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    fanout: EnrollmentFanout = Depends(get_fanout),
) -> ReconciliationEngine:
    return ReconciliationEngine(
        SQLAlchemyUnitOfWork,
        fanout,
        gateway=gateway,
        pending_ttl_minutes=payment_settings.pending_ttl_minutes,
    )


async def get_payment_verifier(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> PaymentVerifier:
    return PaymentVerifier(gateway, engine)


async def get_checkout_service(
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CheckoutService:
    return CheckoutService(SQLAlchemyUnitOfWork, gateway)


async def get_refund_orchestrator(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    fanout: EnrollmentFanout = Depends(get_fanout),
) -> RefundOrchestrator:
    refund_cfg = payment_settings.refund
    policy = RefundPolicy(window_days=refund_cfg.window_days, enabled=refund_cfg.enabled)
    return RefundOrchestrator(SQLAlchemyUnitOfWork, gateway, fanout, policy)


async def get_purchase_query_service() -> PurchaseQueryService:
    return PurchaseQueryService(uow_factory=SQLAlchemyUnitOfWork)
