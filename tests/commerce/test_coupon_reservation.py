from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.commerce.coupons.service import is_coupon_expired, is_reservation_active
from app.db.models.coupons import Coupon

UTC = timezone.utc
EXPIRY = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_reservation_is_active_before_its_expiry() -> None:
    coupon = Coupon(reservation_expiry=EXPIRY)
    assert is_reservation_active(coupon, now_utc=EXPIRY - timedelta(microseconds=1)) is True


def test_reservation_is_expired_at_its_expiry_instant() -> None:
    coupon = Coupon(reservation_expiry=EXPIRY)
    assert is_reservation_active(coupon, now_utc=EXPIRY) is False
    assert is_reservation_active(coupon, now_utc=EXPIRY + timedelta(seconds=1)) is False


def test_unreserved_coupon_is_not_active() -> None:
    assert is_reservation_active(Coupon(reservation_expiry=None), now_utc=EXPIRY) is False


def test_coupon_expiry_is_inclusive() -> None:
    coupon = Coupon(expires_at=EXPIRY)
    assert is_coupon_expired(coupon, now_utc=EXPIRY - timedelta(seconds=1)) is False
    assert is_coupon_expired(coupon, now_utc=EXPIRY) is True
    assert is_coupon_expired(Coupon(expires_at=None), now_utc=EXPIRY) is False
