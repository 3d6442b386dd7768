"""
数据库模型基类（SQLAlchemy 2.0 风格）
"""
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """所有时间列统一存储带时区的 UTC 时间"""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass
