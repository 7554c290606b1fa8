from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.commerce.coupons.errors import (
    CouponExpiredError,
    CouponReservedError,
    CouponUnavailableError,
    CouponWrongCourseError,
    CouponWrongOwnerError,
)
from app.commerce.coupons.pricing import compute_discount
from app.commerce.coupons.types import COUPON_STATUS_APPROVED, CouponClaim, CouponPreview
from app.db.models.coupons import Coupon
from app.db.repo.coupons_repo import CouponsRepo
from app.services.coupon_codes import normalize_coupon_code, normalize_email

logger = structlog.get_logger(__name__)

COUPON_RESERVATION_TTL = timedelta(minutes=30)
FULL_DISCOUNT_PERCENTAGE = 100


def is_reservation_active(coupon: Coupon, *, now_utc: datetime) -> bool:
    # A reservation is expired at (not after) its expiry instant.
    return coupon.reservation_expiry is not None and coupon.reservation_expiry > now_utc


def is_coupon_expired(coupon: Coupon, *, now_utc: datetime) -> bool:
    return coupon.expires_at is not None and coupon.expires_at <= now_utc


class CouponLedger:
    @staticmethod
    async def _explain_claim_failure(
        session: AsyncSession,
        *,
        code: str,
        email: str,
        course_id: str,
        now_utc: datetime,
    ) -> CouponUnavailableError | CouponReservedError:
        coupon = await CouponsRepo.get_by_code(session, code=code)
        if (
            coupon is not None
            and coupon.status == COUPON_STATUS_APPROVED
            and not coupon.used
            and coupon.email == email
            and coupon.course_id == course_id
            and is_reservation_active(coupon, now_utc=now_utc)
        ):
            return CouponReservedError()
        return CouponUnavailableError()

    @staticmethod
    async def reserve_or_consume(
        session: AsyncSession,
        *,
        code: str,
        email: str,
        course_id: str,
        course_price: Decimal,
        now_utc: datetime,
        reservation_ttl: timedelta = COUPON_RESERVATION_TTL,
    ) -> CouponClaim:
        normalized_code = normalize_coupon_code(code)
        normalized_email = normalize_email(email)

        candidate = await CouponsRepo.find_claimable(
            session,
            code=normalized_code,
            email=normalized_email,
            course_id=course_id,
        )
        if candidate is None:
            logger.info(
                "coupon_claim_rejected",
                coupon_code=normalized_code,
                course_id=course_id,
                reason="not_claimable",
            )
            raise CouponUnavailableError

        consumed = candidate.discount_percentage >= FULL_DISCOUNT_PERCENTAGE
        if consumed:
            coupon = await CouponsRepo.claim(
                session,
                code=normalized_code,
                email=normalized_email,
                course_id=course_id,
                now_utc=now_utc,
            )
        else:
            coupon = await CouponsRepo.reserve(
                session,
                code=normalized_code,
                email=normalized_email,
                course_id=course_id,
                now_utc=now_utc,
                reservation_expiry=now_utc + reservation_ttl,
            )

        if coupon is None:
            error = await CouponLedger._explain_claim_failure(
                session,
                code=normalized_code,
                email=normalized_email,
                course_id=course_id,
                now_utc=now_utc,
            )
            logger.info(
                "coupon_claim_rejected",
                coupon_code=normalized_code,
                course_id=course_id,
                reason=type(error).__name__,
            )
            raise error

        # Expiry is checked after the atomic claim so a racing claim on an
        # expiring coupon is rolled back instead of leaking.
        if is_coupon_expired(coupon, now_utc=now_utc):
            await CouponsRepo.clear_reservation_and_usage(session, coupon_id=coupon.id)
            logger.info(
                "coupon_claim_rolled_back_expired",
                coupon_id=str(coupon.id),
                coupon_code=normalized_code,
            )
            raise CouponExpiredError

        logger.info(
            "coupon_consumed" if consumed else "coupon_reserved",
            coupon_id=str(coupon.id),
            course_id=course_id,
            discount_percentage=coupon.discount_percentage,
        )
        return CouponClaim(
            coupon_id=coupon.id,
            code=coupon.code,
            discount_percentage=coupon.discount_percentage,
            pricing=compute_discount(course_price, coupon.discount_percentage),
            consumed=consumed,
            reservation_expiry=coupon.reservation_expiry,
        )

    @staticmethod
    async def release(session: AsyncSession, *, coupon_id: UUID) -> bool:
        released = await CouponsRepo.clear_reservation_and_usage(session, coupon_id=coupon_id)
        if released:
            logger.info("coupon_released", coupon_id=str(coupon_id))
        return released

    @staticmethod
    async def link_enrollment(
        session: AsyncSession,
        *,
        coupon_id: UUID,
        enrollment_id: UUID,
    ) -> None:
        await CouponsRepo.link_enrollment(session, coupon_id=coupon_id, enrollment_id=enrollment_id)

    @staticmethod
    async def finalize(
        session: AsyncSession,
        *,
        coupon_id: UUID,
        used_by: str,
        enrollment_id: UUID,
        now_utc: datetime,
    ) -> bool:
        finalized = await CouponsRepo.mark_used(
            session,
            coupon_id=coupon_id,
            used_by=used_by,
            enrollment_id=enrollment_id,
            now_utc=now_utc,
        )
        if finalized:
            logger.info(
                "coupon_consumed",
                coupon_id=str(coupon_id),
                enrollment_id=str(enrollment_id),
            )
        else:
            logger.warning(
                "coupon_finalize_skipped_already_used",
                coupon_id=str(coupon_id),
                enrollment_id=str(enrollment_id),
            )
        return finalized

    @staticmethod
    async def preview(
        session: AsyncSession,
        *,
        code: str,
        course_id: str,
        course_price: Decimal,
        now_utc: datetime,
        email: str | None = None,
    ) -> CouponPreview:
        coupon = await CouponsRepo.get_by_code(session, code=normalize_coupon_code(code))
        if coupon is None or coupon.status != COUPON_STATUS_APPROVED or coupon.used:
            raise CouponUnavailableError
        if coupon.course_id != course_id:
            raise CouponWrongCourseError
        if email is not None and coupon.email != normalize_email(email):
            raise CouponWrongOwnerError
        if is_coupon_expired(coupon, now_utc=now_utc):
            raise CouponExpiredError

        return CouponPreview(
            code=coupon.code,
            course_id=coupon.course_id,
            pricing=compute_discount(course_price, coupon.discount_percentage),
            expires_at=coupon.expires_at,
        )
