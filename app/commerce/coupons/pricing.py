from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((round_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True, slots=True)
class PriceBreakdown:
    original_price: Decimal
    discount_percentage: int
    discount_amount: Decimal
    final_price: Decimal

    @property
    def requires_payment(self) -> bool:
        return self.final_price > ZERO


def compute_discount(course_price: Decimal | int | str, discount_percentage: int) -> PriceBreakdown:
    if not 0 <= discount_percentage <= 100:
        raise ValueError(f"discount_percentage out of range: {discount_percentage}")

    original_price = round_money(course_price)
    if original_price < ZERO:
        raise ValueError("course_price must not be negative")

    discount_amount = round_money(original_price * discount_percentage / Decimal(100))
    # Subtraction of two cent-quantized values is exact, so the pair always adds back up.
    final_price = original_price - discount_amount
    return PriceBreakdown(
        original_price=original_price,
        discount_percentage=discount_percentage,
        discount_amount=discount_amount,
        final_price=final_price,
    )


def full_price(course_price: Decimal | int | str) -> PriceBreakdown:
    return compute_discount(course_price, 0)
