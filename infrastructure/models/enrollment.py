"""
选课视图数据库模型

两张表分别对应两个反规范化视图；唯一约束让“添加”天然幂等。
"""
from sqlalchemy import Column, Integer, DateTime, UniqueConstraint

from .base import Base, utcnow


class BuyerEnrollmentModel(Base):
    """买家已选课程集合"""
    __tablename__ = "buyer_enrollments"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, nullable=False, index=True, comment="买家ID")
    course_id = Column(Integer, nullable=False, comment="课程ID")
    enrolled_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="选课时间",
    )

    __table_args__ = (
        UniqueConstraint("buyer_id", "course_id", name="uq_buyer_enrollments_buyer_course"),
    )


class CourseStudentModel(Base):
    """课程花名册"""
    __tablename__ = "course_students"

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, nullable=False, index=True, comment="课程ID")
    buyer_id = Column(Integer, nullable=False, comment="学员（买家）ID")
    added_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("course_id", "buyer_id", name="uq_course_students_course_buyer"),
    )
