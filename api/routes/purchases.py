"""
购买API路由 - 下单、支付确认（webhook/客户端）、退款与查询

保持薄层：签名校验、对账与扇出都在应用服务中完成。
"""
from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import (
    get_checkout_service,
    get_current_buyer_id,
    get_payment_verifier,
    get_purchase_query_service,
    get_refund_orchestrator,
)
from application.dto import (
    CheckoutRequestDTO,
    CheckoutResultDTO,
    PurchaseDTO,
    PurchasedCourseDTO,
    PurchaseStatusDTO,
    ReconciliationDTO,
    RefundRequestDTO,
    VerifyPaymentDTO,
    WebhookAckDTO,
)
from application.services.checkout_service import CheckoutService
from application.services.payment_verifier import PaymentVerifier
from application.services.purchase_query_service import PurchaseQueryService
from application.services.reconciliation_service import ReconciliationResult
from application.services.refund_service import RefundOrchestrator
from core.alerts import security_event
from core.logging_config import get_logger
from core.response import Response as ApiResponse, success_response
from core.settings import payment_settings
from domain.common.exceptions import DomainValidationException, ReconciliationAnomalyException


router = APIRouter(prefix="/purchases", tags=["Purchases"])
logger = get_logger(__name__)


def _remote_ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    """单个IP精确匹配，含 / 的条目按网段匹配"""
    rip = ipaddress.ip_address(remote_ip)
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


def _reconciliation_dto(result: ReconciliationResult) -> ReconciliationDTO:
    return ReconciliationDTO(
        outcome=result.outcome.value,
        anomaly=result.anomaly,
        fanout_deferred=result.fanout_deferred,
        purchase=PurchaseDTO.from_entity(result.purchase) if result.purchase else None,
    )


@router.post("/checkout", summary="创建支付订单", response_model=ApiResponse[CheckoutResultDTO])
async def checkout(
    payload: CheckoutRequestDTO,
    buyer_id: int = Depends(get_current_buyer_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    为当前买家创建待支付购买并向网关下单

    金额取自课程目录，客户端不能指定价格。
    """
    result = await service.initiate(buyer_id, payload.course_id)
    return success_response(data=result, message="Checkout created")


@router.post("/webhook", summary="支付网关回调", response_model=ApiResponse[WebhookAckDTO])
async def payment_webhook(
    request: Request,
    verifier: PaymentVerifier = Depends(get_payment_verifier),
):
    # Content-Type 检查：两个网关都只投递 JSON
    ct = (request.headers.get("content-type") or "").lower()
    if "application/json" not in ct:
        raise DomainValidationException("Unsupported content type", field="content-type")

    # 可选的来源IP白名单；只看直连地址，不信任转发头
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = request.client.host if request.client else None
        try:
            permitted = bool(remote_ip) and _remote_ip_permitted(remote_ip, allowlist)
        except ValueError:
            permitted = False
        if not permitted:
            security_event(
                "webhook_ip_rejected",
                provider=verifier.gateway.provider,
                remote_ip=remote_ip,
            )
            return success_response(data=WebhookAckDTO(received=False), message="Webhook ignored")

    # 原始字节参与验签，必须在任何解析之前读取
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    receipt = await verifier.verify_webhook(headers, raw_body)

    result = receipt.result
    ack = WebhookAckDTO(
        received=True,
        event_id=receipt.event.id,
        event_type=receipt.event.type,
        outcome=result.outcome.value if result else None,
        anomaly=result.anomaly if result else False,
    )
    # 异常已告警给运维；仍返回2xx，避免网关重投同一事件
    return success_response(data=ack, message="Webhook received")


@router.post("/verify-payment", summary="客户端支付确认", response_model=ApiResponse[ReconciliationDTO])
async def verify_payment(
    payload: VerifyPaymentDTO,
    buyer_id: int = Depends(get_current_buyer_id),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
):
    """
    校验客户端转发的 order/payment/signature，并把支付结果写入账本
    """
    result = await verifier.verify_client_confirmation(
        payload.order_ref, payload.payment_ref, payload.signature, buyer_id=buyer_id
    )
    if result.anomaly:
        purchase_id = result.purchase.id if result.purchase else None
        raise ReconciliationAnomalyException(purchase_id, result.reason or "anomaly")
    return success_response(data=_reconciliation_dto(result), message="Payment verified")


@router.post("/refund", summary="申请退款", response_model=ApiResponse[PurchaseDTO])
async def refund(
    payload: RefundRequestDTO,
    buyer_id: int = Depends(get_current_buyer_id),
    orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    purchase = await orchestrator.refund(payload.purchase_id, buyer_id, payload.reason)
    return success_response(data=purchase, message="Refund processed")


@router.get(
    "/purchase-status/{course_id}",
    summary="课程购买状态",
    response_model=ApiResponse[PurchaseStatusDTO],
)
async def purchase_status(
    course_id: int,
    buyer_id: int = Depends(get_current_buyer_id),
    service: PurchaseQueryService = Depends(get_purchase_query_service),
):
    status = await service.purchase_status(buyer_id, course_id)
    return success_response(data=status)


@router.get(
    "/purchased-courses",
    summary="已购课程列表",
    response_model=ApiResponse[list[PurchasedCourseDTO]],
)
async def purchased_courses(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    buyer_id: int = Depends(get_current_buyer_id),
    service: PurchaseQueryService = Depends(get_purchase_query_service),
):
    courses = await service.purchased_courses(buyer_id, skip=skip, limit=limit)
    return success_response(data=courses)
