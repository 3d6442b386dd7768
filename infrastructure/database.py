"""
数据库引擎与会话工厂

Web 进程共享一个带连接池的引擎；Celery 任务每次运行都创建独立的 NullPool 引擎，
因为每个任务都在新的事件循环（asyncio.run）中执行。
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from core.config import settings
from core.logging_config import get_logger
from infrastructure.models import Base


logger = get_logger(__name__)

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in _ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}. 请使用 async 驱动或更新 DATABASE__URL")
    return url.set(drivername=_ASYNC_DRIVERS[url.drivername]).render_as_string(hide_password=False)


engine = create_async_engine(
    _build_async_url(settings.database.url),
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker]:
    """Celery 任务专用：每次 asyncio.run 使用独立引擎，避免跨事件循环复用连接池"""
    task_engine: AsyncEngine = create_async_engine(
        _build_async_url(settings.database.url),
        poolclass=NullPool,
    )
    try:
        yield async_sessionmaker(bind=task_engine, expire_on_commit=False)
    finally:
        await task_engine.dispose()


async def create_tables():
    """开发环境建表；生产环境使用 Alembic 迁移"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def database_ready() -> bool:
    """健康检查用：执行一次 SELECT 1"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("database_unreachable", error=str(exc))
        return False
    return True
