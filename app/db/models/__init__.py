from app.db.models.affiliates import Affiliate
from app.db.models.base import Base
from app.db.models.coupons import Coupon
from app.db.models.courses import Course
from app.db.models.enrollments import Enrollment
from app.db.models.retry_jobs import RetryJob

__all__ = [
    "Affiliate",
    "Base",
    "Coupon",
    "Course",
    "Enrollment",
    "RetryJob",
]
