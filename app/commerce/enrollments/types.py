from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from app.db.models.enrollments import Enrollment

ENROLLMENT_STATUS_PENDING = "pending"
ENROLLMENT_STATUS_PAID = "paid"
ENROLLMENT_STATUS_FAILED = "failed"

ENROLLMENT_TYPE_PAID = "paid"
ENROLLMENT_TYPE_FREE_GRANT = "free_grant"
ENROLLMENT_TYPE_PARTIAL_GRANT = "partial_grant"


@dataclass(frozen=True, slots=True)
class AffiliateAttribution:
    affiliate_id: UUID | None
    affiliate_email: str
    commission_rate: Decimal


@dataclass(slots=True)
class PaymentTransitionResult:
    enrollment: Enrollment | None
    transitioned: bool
    event_recorded: bool
    coupon_finalized: bool = False
