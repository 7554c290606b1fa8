from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

CHECKOUT_CODE_COURSE_NOT_FOUND = "COURSE_NOT_FOUND"
CHECKOUT_CODE_DUPLICATE_ENROLLMENT = "DUPLICATE_ENROLLMENT"
CHECKOUT_CODE_SELF_REFERRAL = "SELF_REFERRAL_NOT_ALLOWED"
CHECKOUT_CODE_COUPON_UNAVAILABLE = "COUPON_UNAVAILABLE"
CHECKOUT_CODE_COUPON_EXPIRED = "COUPON_EXPIRED"
CHECKOUT_CODE_COUPON_RESERVED = "COUPON_RESERVED"
CHECKOUT_CODE_COUPON_WRONG_COURSE = "COUPON_WRONG_COURSE"
CHECKOUT_CODE_COUPON_WRONG_OWNER = "COUPON_WRONG_OWNER"
CHECKOUT_CODE_PAYMENT_SESSION_FAILED = "PAYMENT_SESSION_FAILED"


@dataclass(frozen=True, slots=True)
class CheckoutRequest:
    course_id: str
    email: str
    coupon_code: str | None = None
    affiliate_email: str | None = None


@dataclass(frozen=True, slots=True)
class FreeEnrollment:
    enrollment_id: UUID
    redirect_url: str


@dataclass(frozen=True, slots=True)
class PaymentSessionCreated:
    enrollment_id: UUID
    session_id: str
    checkout_url: str


@dataclass(frozen=True, slots=True)
class CheckoutRejected:
    code: str
    message: str
    http_status: int
    retryable: bool = False
    suggestions: tuple[str, ...] = field(default_factory=tuple)


CheckoutOutcome = FreeEnrollment | PaymentSessionCreated | CheckoutRejected

