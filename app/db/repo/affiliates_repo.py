from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.affiliates import Affiliate
from app.db.models.enrollments import Enrollment


class AffiliatesRepo:
    @staticmethod
    async def get_by_email(session: AsyncSession, *, email: str) -> Affiliate | None:
        stmt = select(Affiliate).where(Affiliate.email == email)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active_by_email(session: AsyncSession, *, email: str) -> Affiliate | None:
        stmt = select(Affiliate).where(Affiliate.email == email, Affiliate.status == "active")
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(session: AsyncSession, *, affiliate: Affiliate) -> Affiliate:
        session.add(affiliate)
        await session.flush()
        return affiliate

    @staticmethod
    async def aggregate_paid_referrals(
        session: AsyncSession,
        *,
        affiliate_email: str,
    ) -> tuple[int, Decimal, Decimal]:
        stmt = select(
            func.count(Enrollment.id),
            func.coalesce(func.sum(Enrollment.amount), 0),
            func.coalesce(func.sum(Enrollment.commission_amount), 0),
        ).where(
            Enrollment.affiliate_email == affiliate_email,
            Enrollment.status == "paid",
        )
        row = (await session.execute(stmt)).one()
        return int(row[0] or 0), Decimal(row[1] or 0), Decimal(row[2] or 0)

    @staticmethod
    async def count_paid_referrals_by_course(
        session: AsyncSession,
        *,
        affiliate_email: str,
    ) -> dict[str, int]:
        stmt = (
            select(Enrollment.course_id, func.count(Enrollment.id))
            .where(
                Enrollment.affiliate_email == affiliate_email,
                Enrollment.status == "paid",
            )
            .group_by(Enrollment.course_id)
        )
        result = await session.execute(stmt)
        return {str(course_id): int(count) for course_id, count in result.all()}

    @staticmethod
    async def update_stats(
        session: AsyncSession,
        *,
        affiliate_id: UUID,
        total_referrals: int,
        total_revenue: Decimal,
        total_commission: Decimal,
        pending_commissions: Decimal,
        courses_sold: dict[str, int],
        now_utc: datetime,
    ) -> None:
        await session.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .values(
                total_referrals=total_referrals,
                total_revenue=total_revenue,
                total_commission=total_commission,
                pending_commissions=pending_commissions,
                courses_sold=courses_sold,
                stats_refreshed_at=now_utc,
            )
        )
