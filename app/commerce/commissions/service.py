from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.commerce.commissions.errors import CommissionInputError
from app.commerce.commissions.types import AffiliateStats, CommissionResult
from app.commerce.coupons.pricing import ZERO, round_money
from app.core.config import get_settings
from app.db.repo.affiliates_repo import AffiliatesRepo
from app.db.repo.enrollments_repo import EnrollmentsRepo

logger = structlog.get_logger(__name__)


def compute_commission(basis_amount: Decimal, rate: Decimal | int | float) -> Decimal:
    basis = round_money(basis_amount)
    commission_rate = Decimal(str(rate))
    if basis < ZERO:
        raise CommissionInputError("basis amount cannot be negative")
    if commission_rate < 0 or commission_rate > 100:
        raise CommissionInputError("commission rate must be between 0 and 100")
    if basis == ZERO:
        return ZERO
    return round_money(basis * commission_rate / Decimal(100))


class CommissionLedger:
    @staticmethod
    async def record_commission(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        now_utc: datetime,
    ) -> CommissionResult:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
        if enrollment is None or enrollment.status != "paid":
            return CommissionResult(
                enrollment_id=enrollment_id,
                recorded=False,
                commission_amount=ZERO,
                reason="not_paid",
            )
        if enrollment.affiliate_email is None:
            return CommissionResult(
                enrollment_id=enrollment_id,
                recorded=False,
                commission_amount=ZERO,
                reason="no_affiliate",
            )
        if enrollment.commission_processed:
            return CommissionResult(
                enrollment_id=enrollment_id,
                recorded=False,
                commission_amount=enrollment.commission_amount,
                reason="already_processed",
            )

        rate = (
            enrollment.commission_rate
            if enrollment.commission_rate is not None
            else Decimal(str(get_settings().default_commission_rate))
        )
        # Commission is earned on what the customer actually paid, not the list price.
        basis_amount = enrollment.amount
        commission_amount = compute_commission(basis_amount, rate)

        recorded = await EnrollmentsRepo.mark_commission_processed(
            session,
            enrollment_id=enrollment_id,
            commission_amount=commission_amount,
            commission_base_amount=basis_amount,
            now_utc=now_utc,
        )
        if not recorded:
            logger.info(
                "commission_skipped",
                enrollment_id=str(enrollment_id),
                reason="already_processed",
            )
            return CommissionResult(
                enrollment_id=enrollment_id,
                recorded=False,
                commission_amount=ZERO,
                reason="already_processed",
            )

        logger.info(
            "commission_recorded",
            enrollment_id=str(enrollment_id),
            affiliate_email=enrollment.affiliate_email,
            commission_amount=str(commission_amount),
            commission_rate=str(rate),
        )
        await CommissionLedger.refresh_affiliate_stats(
            session,
            affiliate_email=enrollment.affiliate_email,
            now_utc=now_utc,
        )
        return CommissionResult(
            enrollment_id=enrollment_id,
            recorded=True,
            commission_amount=commission_amount,
        )

    @staticmethod
    async def refresh_affiliate_stats(
        session: AsyncSession,
        *,
        affiliate_email: str,
        now_utc: datetime,
    ) -> AffiliateStats | None:
        """Recompute an affiliate's derived totals from its paid enrollments.

        This is a full recompute rather than an incremental counter update,
        so running it again after a missed or duplicated update converges
        to the same numbers.
        """
        affiliate = await AffiliatesRepo.get_by_email(session, email=affiliate_email)
        if affiliate is None:
            return None

        total_referrals, total_revenue, total_commission = await AffiliatesRepo.aggregate_paid_referrals(
            session,
            affiliate_email=affiliate_email,
        )
        courses_sold = await AffiliatesRepo.count_paid_referrals_by_course(
            session,
            affiliate_email=affiliate_email,
        )
        total_revenue = round_money(total_revenue)
        total_commission = round_money(total_commission)
        total_paid = round_money(affiliate.total_paid or ZERO)
        pending_commissions = max(total_commission - total_paid, ZERO)

        await AffiliatesRepo.update_stats(
            session,
            affiliate_id=affiliate.id,
            total_referrals=total_referrals,
            total_revenue=total_revenue,
            total_commission=total_commission,
            pending_commissions=pending_commissions,
            courses_sold=courses_sold,
            now_utc=now_utc,
        )
        logger.info(
            "affiliate_stats_refreshed",
            affiliate_email=affiliate_email,
            total_referrals=total_referrals,
            total_commission=str(total_commission),
        )
        return AffiliateStats(
            affiliate_email=affiliate_email,
            total_referrals=total_referrals,
            total_revenue=total_revenue,
            total_commission=total_commission,
            pending_commissions=pending_commissions,
            total_paid=total_paid,
            refreshed_at=now_utc,
            courses_sold=courses_sold,
        )
