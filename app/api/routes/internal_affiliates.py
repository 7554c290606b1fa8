from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from app.commerce.commissions.service import CommissionLedger
from app.db.session import SessionLocal
from app.services.coupon_codes import normalize_email
from app.services.internal_auth import assert_internal_access

router = APIRouter(tags=["internal", "affiliates"])


class RefreshStatsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    affiliate_email: str = Field(alias="affiliateEmail", min_length=3, max_length=320)


class AffiliateStatsResponse(BaseModel):
    affiliate_email: str
    total_referrals: int = Field(ge=0)
    total_revenue: Decimal
    total_commission: Decimal
    pending_commissions: Decimal
    total_paid: Decimal
    courses_sold: dict[str, int]
    refreshed_at: datetime


@router.post("/internal/affiliates/refresh-stats", response_model=AffiliateStatsResponse)
async def refresh_affiliate_stats(request: Request, payload: RefreshStatsRequest) -> AffiliateStatsResponse:
    assert_internal_access(request, scope="affiliates")

    async with SessionLocal.begin() as session:
        stats = await CommissionLedger.refresh_affiliate_stats(
            session,
            affiliate_email=normalize_email(payload.affiliate_email),
            now_utc=datetime.now(timezone.utc),
        )
    if stats is None:
        raise HTTPException(status_code=404, detail={"code": "E_AFFILIATE_NOT_FOUND"})

    return AffiliateStatsResponse(
        affiliate_email=stats.affiliate_email,
        total_referrals=stats.total_referrals,
        total_revenue=stats.total_revenue,
        total_commission=stats.total_commission,
        pending_commissions=stats.pending_commissions,
        total_paid=stats.total_paid,
        courses_sold=stats.courses_sold,
        refreshed_at=stats.refreshed_at,
    )
