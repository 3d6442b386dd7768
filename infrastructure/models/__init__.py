"""Infrastructure models package exports."""
from .base import Base
from .purchase import PurchaseModel
from .course import CourseModel, BuyerModel
from .enrollment import BuyerEnrollmentModel, CourseStudentModel

__all__ = [
    "Base",
    "PurchaseModel",
    "CourseModel",
    "BuyerModel",
    "BuyerEnrollmentModel",
    "CourseStudentModel",
]
