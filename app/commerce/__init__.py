from app.commerce.commissions.service import CommissionLedger
from app.commerce.coupons.service import CouponLedger
from app.commerce.enrollments.service import EnrollmentLedger
from app.commerce.lms_sync.queue import LmsRetryQueue

__all__ = [
    "CommissionLedger",
    "CouponLedger",
    "EnrollmentLedger",
    "LmsRetryQueue",
]
