from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.coupons import Coupon


class CouponsRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, coupon_id: UUID) -> Coupon | None:
        return await session.get(Coupon, coupon_id)

    @staticmethod
    async def get_by_code(session: AsyncSession, *, code: str) -> Coupon | None:
        stmt = select(Coupon).where(Coupon.code == code)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def find_claimable(
        session: AsyncSession,
        *,
        code: str,
        email: str,
        course_id: str,
    ) -> Coupon | None:
        stmt = select(Coupon).where(
            Coupon.code == code,
            Coupon.status == "approved",
            Coupon.used.is_(False),
            Coupon.email == email,
            Coupon.course_id == course_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def claim(
        session: AsyncSession,
        *,
        code: str,
        email: str,
        course_id: str,
        now_utc: datetime,
    ) -> Coupon | None:
        stmt = (
            update(Coupon)
            .where(
                Coupon.code == code,
                Coupon.status == "approved",
                Coupon.used.is_(False),
                Coupon.email == email,
                Coupon.course_id == course_id,
            )
            .values(used=True, used_at=now_utc, used_by=email)
            .returning(Coupon)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def reserve(
        session: AsyncSession,
        *,
        code: str,
        email: str,
        course_id: str,
        now_utc: datetime,
        reservation_expiry: datetime,
    ) -> Coupon | None:
        stmt = (
            update(Coupon)
            .where(
                Coupon.code == code,
                Coupon.status == "approved",
                Coupon.used.is_(False),
                Coupon.email == email,
                Coupon.course_id == course_id,
                or_(
                    Coupon.reservation_expiry.is_(None),
                    Coupon.reservation_expiry <= now_utc,
                ),
            )
            .values(
                reserved_at=now_utc,
                reserved_by=email,
                reservation_expiry=reservation_expiry,
            )
            .returning(Coupon)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_used(
        session: AsyncSession,
        *,
        coupon_id: UUID,
        used_by: str,
        enrollment_id: UUID,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.used.is_(False))
            .values(
                used=True,
                used_at=now_utc,
                used_by=used_by,
                enrollment_id=enrollment_id,
                reserved_at=None,
                reserved_by=None,
                reservation_expiry=None,
            )
            .returning(Coupon.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def link_enrollment(
        session: AsyncSession,
        *,
        coupon_id: UUID,
        enrollment_id: UUID,
    ) -> None:
        await session.execute(
            update(Coupon).where(Coupon.id == coupon_id).values(enrollment_id=enrollment_id)
        )

    @staticmethod
    async def clear_reservation_and_usage(session: AsyncSession, *, coupon_id: UUID) -> bool:
        stmt = (
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(
                    Coupon.used.is_(True),
                    Coupon.reserved_by.is_not(None),
                    Coupon.reservation_expiry.is_not(None),
                ),
            )
            .values(
                used=False,
                used_at=None,
                used_by=None,
                reserved_at=None,
                reserved_by=None,
                reservation_expiry=None,
                enrollment_id=None,
            )
            .returning(Coupon.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None
