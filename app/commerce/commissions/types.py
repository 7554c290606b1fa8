from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID


@dataclass(slots=True)
class CommissionResult:
    enrollment_id: UUID
    recorded: bool
    commission_amount: Decimal
    reason: str | None = None


@dataclass(slots=True)
class AffiliateStats:
    affiliate_email: str
    total_referrals: int
    total_revenue: Decimal
    total_commission: Decimal
    pending_commissions: Decimal
    total_paid: Decimal
    refreshed_at: datetime
    courses_sold: dict[str, int] = field(default_factory=dict)
