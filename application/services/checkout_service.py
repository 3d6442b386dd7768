"""
下单服务（application/services）- 开启一次购买并向网关创建订单

依赖 application 端口（PaymentGateway）与 UoW；网关实现由组合根注入。
"""
from __future__ import annotations

import hashlib
from typing import Callable

from application.dto import CheckoutResultDTO, CourseSummaryDTO
from application.dtos.payments import CreateOrder, to_minor
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.common.exceptions import (
    AlreadyPurchasedException,
    AmountMismatchException,
    BuyerNotFoundException,
    CourseNotFoundException,
    PaymentGatewayError,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.purchase.entity import Purchase, PurchaseStatus


logger = get_logger(__name__)


def _idempotency_key(req: CreateOrder, provider: str) -> str:
    # Stable, reproducible key derived from business identifiers (no timestamp)
    base = f"create|{req.purchase_id}|{req.buyer_id}|{req.course_id}|{req.amount}|{req.currency}|{provider.lower()}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class CheckoutService:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], gateway: PaymentGateway) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway

    async def initiate(self, buyer_id: int, course_id: int) -> CheckoutResultDTO:
        # 1. 开启 pending 购买（独立事务，先于网关调用提交）
        async with self._uow_factory() as uow:
            if not await uow.buyer_directory.buyer_exists(buyer_id):
                raise BuyerNotFoundException(buyer_id)
            course = await uow.course_catalog.get_course(course_id)
            if course is None:
                raise CourseNotFoundException(course_id)
            if await uow.purchase_repository.get_completed(buyer_id, course_id) is not None:
                raise AlreadyPurchasedException(buyer_id, course_id)
            purchase = await uow.purchase_repository.create(
                Purchase.open(
                    buyer_id=buyer_id,
                    course_id=course_id,
                    price=course.price,
                    currency=course.currency,
                    provider=self.gateway.provider,
                )
            )

        req = CreateOrder(
            purchase_id=purchase.id,
            buyer_id=buyer_id,
            course_id=course_id,
            amount=purchase.amount,
            currency=purchase.currency,
            course_title=course.title,
        )
        req.idempotency_key = _idempotency_key(req, self.gateway.provider)
        logger.info(
            "checkout_order_request",
            purchase_id=purchase.id,
            provider=self.gateway.provider,
            amount=str(purchase.amount),
            currency=purchase.currency,
            idempotency_key=req.idempotency_key,
        )

        # 2. 网关下单；任何失败都把购买标记为 failed，不留下没有网关订单的 pending
        try:
            order = await self.gateway.create_order(req)
        except Exception as exc:
            await self._abandon(purchase, f"gateway_error:{type(exc).__name__}")
            raise

        expected_minor = to_minor(purchase.amount, purchase.currency)
        if order.amount_minor != expected_minor or order.currency.upper() != purchase.currency:
            await self._abandon(purchase, "amount_mismatch")
            raise AmountMismatchException(self.gateway.provider, expected_minor, order.amount_minor)

        # 3. 记录网关订单号（唯一约束冲突由仓储转换为网关错误）
        purchase.attach_order(order.order_ref)
        try:
            async with self._uow_factory() as uow:
                attached = await uow.purchase_repository.attach_order_ref(purchase)
        except PaymentGatewayError:
            await self._abandon(purchase, "duplicate_order_ref")
            raise
        if not attached:
            # 购买已被其他流程（超时清理）终结
            raise PaymentGatewayError(
                "Purchase is no longer pending",
                provider=self.gateway.provider,
                details={"purchase_id": purchase.id},
            )

        logger.info(
            "checkout_order_created",
            purchase_id=purchase.id,
            provider=order.provider,
            order_ref=order.order_ref,
            amount_minor=order.amount_minor,
        )
        return CheckoutResultDTO(
            purchase_id=purchase.id,
            provider=order.provider,
            order_ref=order.order_ref,
            amount=purchase.amount,
            amount_minor=order.amount_minor,
            currency=purchase.currency,
            checkout=order.checkout,
            course=CourseSummaryDTO.from_snapshot(course),
        )

    async def _abandon(self, purchase: Purchase, reason: str) -> None:
        purchase.mark_failed(reason)
        async with self._uow_factory() as uow:
            won = await uow.purchase_repository.compare_and_set(purchase, PurchaseStatus.PENDING)
        logger.warning(
            "checkout_purchase_failed",
            purchase_id=purchase.id,
            reason=reason,
            recorded=won,
        )
