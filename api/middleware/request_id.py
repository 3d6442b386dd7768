"""
Request ID 中间件
生成或透传追踪ID，并把请求来源绑定到 structlog 上下文
"""
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


# 网关投递回调时携带的事件ID头，用于把日志和网关后台的投递记录对上
GATEWAY_DELIVERY_HEADERS = ("X-Razorpay-Event-Id",)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    peer_ip 只取直连地址；X-Forwarded-For 单独记录为 forwarded_for，
    不参与任何安全判断（回调IP白名单只看 peer_ip）。
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        peer_ip = request.client.host if request.client else "unknown"

        request.state.request_id = request_id
        request.state.peer_ip = peer_ip

        structlog.contextvars.clear_contextvars()
        context = {
            "request_id": request_id,
            "peer_ip": peer_ip,
            "method": request.method,
            "path": request.url.path,
        }
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            context["forwarded_for"] = forwarded
        for header in GATEWAY_DELIVERY_HEADERS:
            delivery_id = request.headers.get(header)
            if delivery_id:
                context["gateway_delivery_id"] = delivery_id
        structlog.contextvars.bind_contextvars(**context)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response
