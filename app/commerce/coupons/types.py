from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.commerce.coupons.pricing import PriceBreakdown

COUPON_STATUS_APPROVED = "approved"


@dataclass(slots=True)
class CouponClaim:
    coupon_id: UUID
    code: str
    discount_percentage: int
    pricing: PriceBreakdown
    consumed: bool
    reservation_expiry: datetime | None = None


@dataclass(slots=True)
class CouponPreview:
    code: str
    course_id: str
    pricing: PriceBreakdown
    expires_at: datetime | None
