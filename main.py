"""
FastAPI应用主入口 - 课程购买与支付对账服务
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import purchases as purchase_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import payment_settings
from infrastructure.database import create_tables, database_ready, engine
from infrastructure.external.payments import get_payment_gateway


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info("database_migrations_required", message="Run `alembic upgrade head` before serving traffic")

    # 网关客户端在进程内共享连接池；配置缺失时服务仍可启动，支付接口返回 502
    try:
        app.state.payment_gateway = get_payment_gateway()
        logger.info("payment_gateway_initialized", provider=app.state.payment_gateway.provider)
    except (RuntimeError, ValueError) as exc:
        app.state.payment_gateway = None
        logger.error("payment_gateway_init_failed", provider=payment_settings.default_provider, error=str(exc))

    yield

    gateway = getattr(app.state, "payment_gateway", None)
    if gateway is not None:
        await gateway.aclose()
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="课程购买与支付对账服务",
)

# 后添加的中间件在外层：RequestID 最先执行，日志中间件才能带上 request_id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)

register_exception_handlers(app)

app.include_router(purchase_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={"name": settings.PROJECT_NAME, "version": settings.VERSION, "docs": "/docs"},
        message="Welcome",
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """
    健康检查

    数据库不可达时 status 为 degraded；网关未配置只影响支付接口，单独报告。
    """
    db_ok = await database_ready()
    gateway = getattr(app.state, "payment_gateway", None)
    return success_response(
        data={
            "status": "healthy" if db_ok else "degraded",
            "database": db_ok,
            "payment_gateway": gateway.provider if gateway is not None else None,
        },
        message="OK",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
