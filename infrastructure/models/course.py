"""
课程与买家数据库模型（外部协作方拥有的数据，本服务只读价格/存在性）
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, Boolean

from .base import Base, utcnow


class CourseModel(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False, comment="课程标题")
    description = Column(Text, nullable=True, comment="课程简介")
    price = Column(Numeric(precision=15, scale=2), nullable=False, comment="课程价格")
    currency = Column(String(3), nullable=False, default="INR", comment="货币代码")
    is_published = Column(Boolean, nullable=False, default=True, comment="是否已发布")
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self):
        return f"<CourseModel(id={self.id}, title='{self.title}', price={self.price})>"


class BuyerModel(Base):
    __tablename__ = "buyers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, comment="邮箱")
    name = Column(String(100), nullable=True, comment="姓名")
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self):
        return f"<BuyerModel(id={self.id}, email='{self.email}')>"
