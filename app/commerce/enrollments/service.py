from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.commerce.coupons.pricing import ZERO, PriceBreakdown
from app.commerce.coupons.service import CouponLedger
from app.commerce.enrollments.errors import (
    DuplicateEnrollmentError,
    EnrollmentNotFoundError,
    EnrollmentStateError,
)
from app.commerce.enrollments.types import (
    ENROLLMENT_STATUS_PAID,
    ENROLLMENT_STATUS_PENDING,
    ENROLLMENT_TYPE_FREE_GRANT,
    ENROLLMENT_TYPE_PARTIAL_GRANT,
    AffiliateAttribution,
    PaymentTransitionResult,
)
from app.db.models.enrollments import Enrollment
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.services.coupon_codes import normalize_email

logger = structlog.get_logger(__name__)


def _build_enrollment(
    *,
    course_id: str,
    email: str,
    pricing: PriceBreakdown,
    enrollment_type: str,
    status: str,
    currency: str,
    coupon_id: UUID | None,
    attribution: AffiliateAttribution | None,
    payment_id: str | None,
    now_utc: datetime,
) -> Enrollment:
    enrollment = Enrollment(
        id=uuid4(),
        course_id=course_id,
        email=email,
        status=status,
        enrollment_type=enrollment_type,
        amount=pricing.final_price,
        original_price=pricing.original_price,
        discount_amount=pricing.discount_amount,
        discount_percentage=pricing.discount_percentage,
        currency=currency,
        coupon_id=coupon_id,
        payment_id=payment_id,
        commission_amount=ZERO,
        commission_processed=False,
        lms_sync_status="pending",
        lms_sync_attempts=0,
        processed_event_ids=[],
        created_at=now_utc,
        updated_at=now_utc,
        paid_at=now_utc if status == ENROLLMENT_STATUS_PAID else None,
    )
    if attribution is not None:
        enrollment.affiliate_id = attribution.affiliate_id
        enrollment.affiliate_email = attribution.affiliate_email
        enrollment.commission_rate = attribution.commission_rate
        enrollment.commission_base_amount = pricing.final_price
        if enrollment_type == ENROLLMENT_TYPE_FREE_GRANT:
            # Nothing was charged, so there is nothing to commission later.
            enrollment.commission_processed = True
            enrollment.commission_processed_at = now_utc
    return enrollment


class EnrollmentLedger:
    @staticmethod
    async def ensure_no_active_enrollment(
        session: AsyncSession,
        *,
        course_id: str,
        email: str,
    ) -> None:
        existing = await EnrollmentsRepo.get_active_for_course_email(
            session,
            course_id=course_id,
            email=normalize_email(email),
        )
        if existing is not None:
            raise DuplicateEnrollmentError

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        course_id: str,
        email: str,
        pricing: PriceBreakdown,
        enrollment_type: str,
        now_utc: datetime,
        currency: str = "usd",
        coupon_id: UUID | None = None,
        attribution: AffiliateAttribution | None = None,
        status: str = ENROLLMENT_STATUS_PENDING,
        payment_id: str | None = None,
    ) -> Enrollment:
        normalized_email = normalize_email(email)
        await EnrollmentLedger.ensure_no_active_enrollment(
            session,
            course_id=course_id,
            email=normalized_email,
        )

        enrollment = _build_enrollment(
            course_id=course_id,
            email=normalized_email,
            pricing=pricing,
            enrollment_type=enrollment_type,
            status=status,
            currency=currency,
            coupon_id=coupon_id,
            attribution=attribution,
            payment_id=payment_id,
            now_utc=now_utc,
        )
        try:
            async with session.begin_nested():
                await EnrollmentsRepo.create(session, enrollment=enrollment)
        except IntegrityError as exc:
            # The partial unique index closes the window between the check and the insert.
            raise DuplicateEnrollmentError from exc

        logger.info(
            "enrollment_created",
            enrollment_id=str(enrollment.id),
            course_id=course_id,
            status=status,
            enrollment_type=enrollment_type,
            amount=str(enrollment.amount),
        )
        return enrollment

    @staticmethod
    async def begin_payment_session(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        payment_session_id: str,
        now_utc: datetime,
    ) -> None:
        attached = await EnrollmentsRepo.set_payment_session(
            session,
            enrollment_id=enrollment_id,
            payment_session_id=payment_session_id,
            now_utc=now_utc,
        )
        if not attached:
            raise EnrollmentStateError

    @staticmethod
    async def confirm_payment(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        event_id: str,
        payment_id: str,
        now_utc: datetime,
    ) -> PaymentTransitionResult:
        """Flip a pending enrollment to paid exactly once per enrollment.

        The status check and the processed-event check are one conditional
        UPDATE, so concurrent deliveries of the same provider event race on
        the row and only one of them wins. Losers only get their event id
        appended (when it is new) and must not run side effects.

        Coupon consumption for partial grants runs inside the caller's
        transaction, so it commits together with the status change.
        """
        enrollment = await EnrollmentsRepo.transition_to_paid(
            session,
            enrollment_id=enrollment_id,
            event_id=event_id,
            payment_id=payment_id,
            now_utc=now_utc,
        )
        if enrollment is None:
            recorded = await EnrollmentsRepo.record_event_id(
                session,
                enrollment_id=enrollment_id,
                event_id=event_id,
                now_utc=now_utc,
            )
            current = await EnrollmentsRepo.get_by_id(session, enrollment_id)
            if current is None:
                raise EnrollmentNotFoundError
            logger.info(
                "enrollment_payment_duplicate",
                enrollment_id=str(enrollment_id),
                event_id=event_id,
                status=current.status,
                event_recorded=recorded,
            )
            return PaymentTransitionResult(
                enrollment=current,
                transitioned=False,
                event_recorded=recorded,
            )

        coupon_finalized = False
        if enrollment.enrollment_type == ENROLLMENT_TYPE_PARTIAL_GRANT and enrollment.coupon_id is not None:
            coupon_finalized = await CouponLedger.finalize(
                session,
                coupon_id=enrollment.coupon_id,
                used_by=enrollment.email,
                enrollment_id=enrollment.id,
                now_utc=now_utc,
            )

        logger.info(
            "enrollment_paid",
            enrollment_id=str(enrollment.id),
            event_id=event_id,
            enrollment_type=enrollment.enrollment_type,
            amount=str(enrollment.amount),
        )
        return PaymentTransitionResult(
            enrollment=enrollment,
            transitioned=True,
            event_recorded=True,
            coupon_finalized=coupon_finalized,
        )

    @staticmethod
    async def mark_failed(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        event_id: str,
        now_utc: datetime,
    ) -> bool:
        enrollment = await EnrollmentsRepo.transition_to_failed(
            session,
            enrollment_id=enrollment_id,
            event_id=event_id,
            now_utc=now_utc,
        )
        if enrollment is None:
            await EnrollmentsRepo.record_event_id(
                session,
                enrollment_id=enrollment_id,
                event_id=event_id,
                now_utc=now_utc,
            )
            return False

        if enrollment.coupon_id is not None:
            await CouponLedger.release(session, coupon_id=enrollment.coupon_id)
        logger.info("enrollment_payment_failed", enrollment_id=str(enrollment_id), event_id=event_id)
        return True

    @staticmethod
    async def cancel(session: AsyncSession, *, enrollment_id: UUID) -> bool:
        deleted = await EnrollmentsRepo.delete_pending(session, enrollment_id=enrollment_id)
        if deleted is None:
            return False

        if deleted.coupon_id is not None:
            await CouponLedger.release(session, coupon_id=deleted.coupon_id)
        logger.info(
            "enrollment_cancelled",
            enrollment_id=str(enrollment_id),
            had_coupon=deleted.coupon_id is not None,
        )
        return True
