from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.commerce.checkout.service import initiate_checkout
from app.commerce.checkout.types import CheckoutRequest, FreeEnrollment
from app.commerce.coupons.errors import (
    CouponError,
    CouponExpiredError,
    CouponReservedError,
    CouponUnavailableError,
)
from app.commerce.coupons.service import CouponLedger
from app.commerce.coupons.types import CouponClaim
from app.db.repo.coupons_repo import CouponsRepo
from app.db.session import SessionLocal
from tests.integration.commerce_fixtures import (
    COURSE_ID,
    COURSE_PRICE,
    STUDENT_EMAIL,
    create_coupon,
    create_course,
    install_fake_collaborators,
)

UTC = timezone.utc


async def _attempt_claim(barrier: asyncio.Event, *, code: str) -> CouponClaim | CouponError:
    await barrier.wait()
    try:
        async with SessionLocal.begin() as session:
            return await CouponLedger.reserve_or_consume(
                session,
                code=code,
                email=STUDENT_EMAIL,
                course_id=COURSE_ID,
                course_price=COURSE_PRICE,
                now_utc=datetime.now(UTC),
            )
    except CouponError as exc:
        return exc


@pytest.mark.asyncio
async def test_parallel_reservations_allow_only_one_holder() -> None:
    await create_course()
    await create_coupon(code="GRANT20-RACE", discount_percentage=20)
    barrier = asyncio.Event()

    tasks = [asyncio.create_task(_attempt_claim(barrier, code="GRANT20-RACE")) for _ in range(8)]
    barrier.set()
    results = await asyncio.gather(*tasks)

    claims = [item for item in results if isinstance(item, CouponClaim)]
    assert len(claims) == 1
    assert claims[0].consumed is False
    assert all(isinstance(item, CouponReservedError) for item in results if not isinstance(item, CouponClaim))


@pytest.mark.asyncio
async def test_parallel_full_discount_claims_consume_exactly_once() -> None:
    await create_course()
    coupon = await create_coupon(code="FREE100-RACE", discount_percentage=100)
    barrier = asyncio.Event()

    tasks = [asyncio.create_task(_attempt_claim(barrier, code="FREE100-RACE")) for _ in range(8)]
    barrier.set()
    results = await asyncio.gather(*tasks)

    claims = [item for item in results if isinstance(item, CouponClaim)]
    assert len(claims) == 1
    assert claims[0].consumed is True
    assert all(isinstance(item, CouponUnavailableError) for item in results if not isinstance(item, CouponClaim))

    async with SessionLocal() as session:
        stored = await CouponsRepo.get_by_id(session, coupon.id)
    assert stored is not None
    assert stored.used is True


@pytest.mark.asyncio
async def test_parallel_free_checkouts_create_a_single_enrollment(monkeypatch) -> None:
    install_fake_collaborators(monkeypatch)
    await create_course()
    await create_coupon(code="FREE100-DUP", discount_percentage=100)

    results = await asyncio.gather(
        *(
            initiate_checkout(CheckoutRequest(course_id=COURSE_ID, email=STUDENT_EMAIL, coupon_code="FREE100-DUP"))
            for _ in range(4)
        )
    )

    assert sum(1 for item in results if isinstance(item, FreeEnrollment)) == 1


@pytest.mark.asyncio
async def test_expired_coupon_is_rolled_back_and_left_unused() -> None:
    await create_course()
    coupon = await create_coupon(
        code="GRANT20-OLD",
        discount_percentage=20,
        expires_at=datetime.now(UTC) - timedelta(days=1),
    )

    with pytest.raises(CouponExpiredError):
        async with SessionLocal.begin() as session:
            await CouponLedger.reserve_or_consume(
                session,
                code="GRANT20-OLD",
                email=STUDENT_EMAIL,
                course_id=COURSE_ID,
                course_price=COURSE_PRICE,
                now_utc=datetime.now(UTC),
            )

    async with SessionLocal() as session:
        stored = await CouponsRepo.get_by_id(session, coupon.id)
    assert stored is not None
    assert stored.used is False
    assert stored.reservation_expiry is None


@pytest.mark.asyncio
async def test_expired_reservation_can_be_taken_over() -> None:
    await create_course()
    await create_coupon(code="GRANT20-TTL", discount_percentage=20)
    started = datetime.now(UTC)
    ttl = timedelta(minutes=30)

    async with SessionLocal.begin() as session:
        await CouponLedger.reserve_or_consume(
            session,
            code="GRANT20-TTL",
            email=STUDENT_EMAIL,
            course_id=COURSE_ID,
            course_price=COURSE_PRICE,
            now_utc=started,
            reservation_ttl=ttl,
        )

    with pytest.raises(CouponReservedError):
        async with SessionLocal.begin() as session:
            await CouponLedger.reserve_or_consume(
                session,
                code="GRANT20-TTL",
                email=STUDENT_EMAIL,
                course_id=COURSE_ID,
                course_price=COURSE_PRICE,
                now_utc=started + ttl - timedelta(seconds=1),
            )

    async with SessionLocal.begin() as session:
        claim = await CouponLedger.reserve_or_consume(
            session,
            code="GRANT20-TTL",
            email=STUDENT_EMAIL,
            course_id=COURSE_ID,
            course_price=COURSE_PRICE,
            now_utc=started + ttl,
        )
    assert claim.reservation_expiry is not None
    assert claim.reservation_expiry > started + ttl
