from __future__ import annotations

from decimal import Decimal

import pytest

from app.commerce.coupons.pricing import compute_discount, full_price, round_money, to_minor_units


def test_partial_discount_rounds_half_up_to_cents() -> None:
    breakdown = compute_discount(Decimal("499"), 20)

    assert breakdown.original_price == Decimal("499.00")
    assert breakdown.discount_amount == Decimal("99.80")
    assert breakdown.final_price == Decimal("399.20")
    assert breakdown.requires_payment is True
    assert to_minor_units(breakdown.final_price) == 39920


def test_full_discount_requires_no_payment() -> None:
    breakdown = compute_discount("499.00", 100)

    assert breakdown.final_price == Decimal("0.00")
    assert breakdown.discount_amount == Decimal("499.00")
    assert breakdown.requires_payment is False


def test_discount_and_final_price_add_back_to_original() -> None:
    for percentage in (0, 1, 15, 33, 50, 67, 99):
        breakdown = compute_discount(Decimal("19.99"), percentage)
        assert breakdown.discount_amount + breakdown.final_price == breakdown.original_price


def test_full_price_has_no_discount() -> None:
    breakdown = full_price(250)
    assert breakdown.discount_percentage == 0
    assert breakdown.final_price == Decimal("250.00")


@pytest.mark.parametrize("percentage", [-1, 101])
def test_out_of_range_percentage_is_rejected(percentage: int) -> None:
    with pytest.raises(ValueError):
        compute_discount(Decimal("100"), percentage)


def test_round_money_uses_half_up_and_handles_floats() -> None:
    assert round_money("0.125") == Decimal("0.13")
    assert round_money(0.1 + 0.2) == Decimal("0.30")
    assert to_minor_units(Decimal("10.005")) == 1001
