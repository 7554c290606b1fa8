from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.commerce.checkout.types import (
    CHECKOUT_CODE_COUPON_EXPIRED,
    CHECKOUT_CODE_COUPON_RESERVED,
    CHECKOUT_CODE_COUPON_UNAVAILABLE,
    CHECKOUT_CODE_COUPON_WRONG_COURSE,
    CHECKOUT_CODE_COUPON_WRONG_OWNER,
    CHECKOUT_CODE_COURSE_NOT_FOUND,
    CHECKOUT_CODE_DUPLICATE_ENROLLMENT,
    CHECKOUT_CODE_PAYMENT_SESSION_FAILED,
    CHECKOUT_CODE_SELF_REFERRAL,
    CheckoutOutcome,
    CheckoutRejected,
    CheckoutRequest,
    FreeEnrollment,
    PaymentSessionCreated,
)
from app.commerce.coupons.errors import (
    CouponError,
    CouponExpiredError,
    CouponReservedError,
    CouponWrongCourseError,
    CouponWrongOwnerError,
)
from app.commerce.coupons.pricing import PriceBreakdown, full_price, to_minor_units
from app.commerce.coupons.service import CouponLedger
from app.commerce.coupons.types import CouponPreview
from app.commerce.enrollments.errors import DuplicateEnrollmentError
from app.commerce.enrollments.service import EnrollmentLedger
from app.commerce.enrollments.types import (
    ENROLLMENT_STATUS_PAID,
    ENROLLMENT_TYPE_FREE_GRANT,
    ENROLLMENT_TYPE_PAID,
    ENROLLMENT_TYPE_PARTIAL_GRANT,
    AffiliateAttribution,
)
from app.commerce.lms_sync.service import sync_enrollment_after_payment
from app.core.config import get_settings
from app.db.repo.affiliates_repo import AffiliatesRepo
from app.db.repo.courses_repo import CoursesRepo
from app.db.session import SessionLocal
from app.services.best_effort import run_best_effort
from app.services.coupon_codes import build_free_payment_id, normalize_coupon_code, normalize_email
from app.services.email_sender import EMAIL_TEMPLATE_GRANT_ENROLLMENT, send_template_email
from app.services.payments_gateway import PaymentSessionError, build_line_item, create_checkout_session

logger = structlog.get_logger(__name__)


def _course_not_found() -> CheckoutRejected:
    return CheckoutRejected(
        code=CHECKOUT_CODE_COURSE_NOT_FOUND,
        message="Course not found",
        http_status=404,
        suggestions=("Check the course link", "Browse the course catalog"),
    )


def _self_referral() -> CheckoutRejected:
    return CheckoutRejected(
        code=CHECKOUT_CODE_SELF_REFERRAL,
        message="You cannot use your own email as an affiliate referral.",
        http_status=400,
        suggestions=(
            "Leave the affiliate field empty to enroll normally",
            "Use a different email if this is for someone else",
        ),
    )


def _duplicate_enrollment() -> CheckoutRejected:
    return CheckoutRejected(
        code=CHECKOUT_CODE_DUPLICATE_ENROLLMENT,
        message="Already enrolled in this course",
        http_status=409,
        suggestions=("Check your email for course access", "Cancel the pending checkout to start again"),
    )


def _payment_session_failed() -> CheckoutRejected:
    return CheckoutRejected(
        code=CHECKOUT_CODE_PAYMENT_SESSION_FAILED,
        message="Unable to create payment session. Please try again.",
        http_status=502,
        retryable=True,
        suggestions=("Try again in a few moments",),
    )


def coupon_rejection(error: CouponError) -> CheckoutRejected:
    if isinstance(error, CouponReservedError):
        return CheckoutRejected(
            code=CHECKOUT_CODE_COUPON_RESERVED,
            message="This coupon is currently being used or has been used already",
            http_status=409,
            retryable=True,
            suggestions=("Wait a few minutes and try again", "Finish or cancel the open checkout"),
        )
    if isinstance(error, CouponExpiredError):
        return CheckoutRejected(
            code=CHECKOUT_CODE_COUPON_EXPIRED,
            message="This coupon has expired",
            http_status=400,
            suggestions=("Contact support for a new coupon",),
        )
    if isinstance(error, CouponWrongCourseError):
        return CheckoutRejected(
            code=CHECKOUT_CODE_COUPON_WRONG_COURSE,
            message="This coupon is not valid for this course",
            http_status=400,
        )
    if isinstance(error, CouponWrongOwnerError):
        return CheckoutRejected(
            code=CHECKOUT_CODE_COUPON_WRONG_OWNER,
            message="This coupon was issued to a different email address",
            http_status=400,
        )
    return CheckoutRejected(
        code=CHECKOUT_CODE_COUPON_UNAVAILABLE,
        message="Coupon is no longer available (already used or invalid)",
        http_status=400,
        suggestions=("Check the coupon code", "Continue without a coupon"),
    )


def build_free_redirect_url(*, course_id: str, enrollment_id: UUID) -> str:
    base_url = get_settings().app_base_url.rstrip("/")
    return f"{base_url}/success?type=free&course={course_id}&enrollmentId={enrollment_id}"


def build_success_url() -> str:
    return f"{get_settings().app_base_url.rstrip('/')}/success?session_id={{CHECKOUT_SESSION_ID}}"


def build_cancel_url(*, enrollment_id: UUID) -> str:
    return f"{get_settings().app_base_url.rstrip('/')}/cancel?enrollment_id={enrollment_id}"


def build_session_metadata(
    *,
    enrollment_id: UUID,
    course_id: str,
    email: str,
    affiliate_email: str | None,
    coupon_id: UUID | None,
    enrollment_type: str,
    pricing: PriceBreakdown,
) -> dict[str, str]:
    return {
        "enrollmentId": str(enrollment_id),
        "courseId": course_id,
        "email": email,
        "affiliateEmail": affiliate_email or "",
        "couponId": str(coupon_id) if coupon_id is not None else "",
        "enrollmentType": enrollment_type,
        "originalPrice": str(pricing.original_price),
        "discountPercentage": str(pricing.discount_percentage),
        "finalPrice": str(pricing.final_price),
    }


async def _resolve_attribution(
    session: AsyncSession,
    *,
    affiliate_email: str | None,
) -> AffiliateAttribution | None:
    if not affiliate_email:
        return None
    affiliate = await AffiliatesRepo.get_active_by_email(session, email=affiliate_email)
    if affiliate is None:
        # Unknown or inactive affiliates are ignored rather than failing the purchase.
        logger.info("checkout_affiliate_ignored", affiliate_email=affiliate_email)
        return None
    return AffiliateAttribution(
        affiliate_id=affiliate.id,
        affiliate_email=affiliate.email,
        commission_rate=Decimal(affiliate.commission_rate),
    )


async def _send_grant_email(*, email: str, course_id: str, course_title: str, enrollment_id: UUID) -> bool:
    return await send_template_email(
        template=EMAIL_TEMPLATE_GRANT_ENROLLMENT,
        to_email=email,
        data={
            "courseTitle": course_title,
            "courseId": course_id,
            "enrollmentId": str(enrollment_id),
        },
    )


async def initiate_checkout(
    request: CheckoutRequest,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    now_utc: datetime | None = None,
) -> CheckoutOutcome:
    now_utc = now_utc or datetime.now(timezone.utc)
    email = normalize_email(request.email)
    course_id = request.course_id.strip()
    affiliate_email = normalize_email(request.affiliate_email) if request.affiliate_email else None
    coupon_code = normalize_coupon_code(request.coupon_code) if request.coupon_code else None

    # Coupon claim and enrollment insert share one transaction, so a failed
    # insert also rolls back the claim.
    try:
        async with session_factory.begin() as session:
            course = await CoursesRepo.get_active_by_id(session, course_id)
            if course is None:
                return _course_not_found()
            if affiliate_email is not None and affiliate_email == email:
                logger.warning("checkout_self_referral_blocked", course_id=course_id)
                return _self_referral()

            await EnrollmentLedger.ensure_no_active_enrollment(session, course_id=course_id, email=email)
            attribution = await _resolve_attribution(session, affiliate_email=affiliate_email)

            coupon_id: UUID | None = None
            pricing = full_price(course.price)
            enrollment_type = ENROLLMENT_TYPE_PAID
            if coupon_code:
                claim = await CouponLedger.reserve_or_consume(
                    session,
                    code=coupon_code,
                    email=email,
                    course_id=course_id,
                    course_price=course.price,
                    now_utc=now_utc,
                    reservation_ttl=timedelta(minutes=get_settings().coupon_reservation_minutes),
                )
                coupon_id = claim.coupon_id
                pricing = claim.pricing
                enrollment_type = (
                    ENROLLMENT_TYPE_PARTIAL_GRANT if pricing.requires_payment else ENROLLMENT_TYPE_FREE_GRANT
                )

            if pricing.requires_payment:
                enrollment = await EnrollmentLedger.create(
                    session,
                    course_id=course_id,
                    email=email,
                    pricing=pricing,
                    enrollment_type=enrollment_type,
                    now_utc=now_utc,
                    currency=course.currency,
                    coupon_id=coupon_id,
                    attribution=attribution,
                )
            else:
                enrollment = await EnrollmentLedger.create(
                    session,
                    course_id=course_id,
                    email=email,
                    pricing=pricing,
                    enrollment_type=ENROLLMENT_TYPE_FREE_GRANT,
                    now_utc=now_utc,
                    currency=course.currency,
                    coupon_id=coupon_id,
                    attribution=attribution,
                    status=ENROLLMENT_STATUS_PAID,
                    payment_id=build_free_payment_id(now_utc),
                )
                if coupon_id is not None:
                    await CouponLedger.link_enrollment(
                        session,
                        coupon_id=coupon_id,
                        enrollment_id=enrollment.id,
                    )
            enrollment_id = enrollment.id
            course_title = course.title
            currency = course.currency
    except DuplicateEnrollmentError:
        logger.info("checkout_duplicate_enrollment", course_id=course_id)
        return _duplicate_enrollment()
    except CouponError as exc:
        return coupon_rejection(exc)

    if not pricing.requires_payment:
        await run_best_effort(
            "grant_enrollment_email",
            _send_grant_email(
                email=email,
                course_id=course_id,
                course_title=course_title,
                enrollment_id=enrollment_id,
            ),
            enrollment_id=str(enrollment_id),
        )
        await run_best_effort(
            "lms_sync",
            sync_enrollment_after_payment(enrollment_id, session_factory=session_factory),
            enrollment_id=str(enrollment_id),
        )
        logger.info("checkout_free_enrollment_completed", enrollment_id=str(enrollment_id), course_id=course_id)
        return FreeEnrollment(
            enrollment_id=enrollment_id,
            redirect_url=build_free_redirect_url(course_id=course_id, enrollment_id=enrollment_id),
        )

    try:
        payment_session = await create_checkout_session(
            client_reference_id=str(enrollment_id),
            customer_email=email,
            line_item=build_line_item(
                title=course_title,
                description=f"Enrollment in {course_title}",
                unit_amount=to_minor_units(pricing.final_price),
                currency=currency,
            ),
            metadata=build_session_metadata(
                enrollment_id=enrollment_id,
                course_id=course_id,
                email=email,
                affiliate_email=attribution.affiliate_email if attribution is not None else None,
                coupon_id=coupon_id,
                enrollment_type=enrollment_type,
                pricing=pricing,
            ),
            success_url=build_success_url(),
            cancel_url=build_cancel_url(enrollment_id=enrollment_id),
        )
    except PaymentSessionError:
        async with session_factory.begin() as session:
            await EnrollmentLedger.cancel(session, enrollment_id=enrollment_id)
        logger.warning("checkout_payment_session_rolled_back", enrollment_id=str(enrollment_id))
        return _payment_session_failed()

    async with session_factory.begin() as session:
        await EnrollmentLedger.begin_payment_session(
            session,
            enrollment_id=enrollment_id,
            payment_session_id=payment_session.session_id,
            now_utc=now_utc,
        )

    logger.info(
        "checkout_payment_session_started",
        enrollment_id=str(enrollment_id),
        course_id=course_id,
        enrollment_type=enrollment_type,
        final_price=str(pricing.final_price),
    )
    return PaymentSessionCreated(
        enrollment_id=enrollment_id,
        session_id=payment_session.session_id,
        checkout_url=payment_session.checkout_url,
    )


async def cancel_checkout(
    enrollment_id: UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
) -> bool:
    async with session_factory.begin() as session:
        return await EnrollmentLedger.cancel(session, enrollment_id=enrollment_id)


async def preview_coupon(
    *,
    code: str,
    course_id: str,
    email: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    now_utc: datetime | None = None,
) -> CouponPreview | CheckoutRejected:
    now_utc = now_utc or datetime.now(timezone.utc)
    async with session_factory() as session:
        course = await CoursesRepo.get_active_by_id(session, course_id.strip())
        if course is None:
            return _course_not_found()
        try:
            return await CouponLedger.preview(
                session,
                code=code,
                course_id=course.id,
                course_price=course.price,
                now_utc=now_utc,
                email=email,
            )
        except CouponError as exc:
            return coupon_rejection(exc)
