from __future__ import annotations

from decimal import Decimal

import pytest

from app.commerce.commissions.errors import CommissionInputError
from app.commerce.commissions.service import compute_commission


def test_compute_commission_applies_percentage_with_half_up_rounding() -> None:
    assert compute_commission(Decimal("399.20"), Decimal("20")) == Decimal("79.84")
    assert compute_commission(Decimal("10.05"), 15) == Decimal("1.51")


def test_compute_commission_is_zero_for_free_enrollments() -> None:
    assert compute_commission(Decimal("0"), 20) == Decimal("0.00")


@pytest.mark.parametrize("rate", [-1, 101])
def test_compute_commission_rejects_rate_outside_percentage_range(rate: int) -> None:
    with pytest.raises(CommissionInputError):
        compute_commission(Decimal("100"), rate)


def test_compute_commission_rejects_negative_basis() -> None:
    with pytest.raises(CommissionInputError):
        compute_commission(Decimal("-5"), 10)
