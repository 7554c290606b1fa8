from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from app.commerce.checkout.service import initiate_checkout
from app.commerce.checkout.types import CheckoutRequest, FreeEnrollment
from app.commerce.lms_sync import service as lms_service
from app.commerce.lms_sync.processor import process_lms_sync_queue
from app.commerce.lms_sync.queue import OUTCOME_LEASE_LOST, LmsRetryQueue
from app.commerce.lms_sync.service import list_failed_syncs, manual_resync, manual_resync_all
from app.db.models.retry_jobs import RetryJob
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.db.session import SessionLocal
from app.services.lms_client import LmsEnrollmentResult
from tests.integration.commerce_fixtures import (
    COURSE_ID,
    STUDENT_EMAIL,
    create_coupon,
    create_course,
    install_fake_collaborators,
    make_jobs_due,
)

UTC = timezone.utc
LMS_DOWN = LmsEnrollmentResult(success=False, error="LMS returned 503: maintenance")


async def _free_enrollment_with_failed_immediate_sync(monkeypatch):
    fakes = install_fake_collaborators(monkeypatch)
    fakes.queue_lms_results([LMS_DOWN, LMS_DOWN])
    await create_course()
    await create_coupon(code="FREE100-LMS", discount_percentage=100)

    outcome = await initiate_checkout(
        CheckoutRequest(course_id=COURSE_ID, email=STUDENT_EMAIL, coupon_code="FREE100-LMS")
    )
    assert isinstance(outcome, FreeEnrollment)
    return fakes, outcome.enrollment_id


async def _jobs_for(enrollment_id) -> list[RetryJob]:
    async with SessionLocal() as session:
        result = await session.execute(select(RetryJob).where(RetryJob.enrollment_id == enrollment_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_failed_immediate_sync_enqueues_one_retry_job(monkeypatch) -> None:
    fakes, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)

    assert len(fakes.lms_calls) == 2
    jobs = await _jobs_for(enrollment_id)
    assert len(jobs) == 1
    assert jobs[0].status == "pending"
    assert jobs[0].attempts == 0
    assert jobs[0].next_retry_at > datetime.now(UTC)

    async with SessionLocal() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
        failed = await list_failed_syncs(session)
    assert enrollment is not None
    assert enrollment.status == "paid"
    assert enrollment.lms_sync_status == "retrying"
    assert enrollment.lms_sync_attempts == 2
    assert enrollment.lms_retry_job_id == jobs[0].id
    assert [item.enrollment_id for item in failed] == [enrollment_id]
    assert failed[0].retry_job_status == "pending"

    summary = await process_lms_sync_queue(batch_size=10, worker_id="test-worker")
    assert summary["processed"] == 0


@pytest.mark.asyncio
async def test_queue_retries_until_max_attempts_then_manual_resync_recovers(monkeypatch) -> None:
    fakes, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)
    fakes.queue_lms_results([LMS_DOWN] * 5)

    outcomes: list[dict[str, int]] = []
    for _ in range(5):
        await make_jobs_due(enrollment_id)
        outcomes.append(await process_lms_sync_queue(batch_size=10, worker_id="test-worker"))

    assert [summary["rescheduled"] for summary in outcomes] == [1, 1, 1, 1, 0]
    assert outcomes[-1]["failed"] == 1

    jobs = await _jobs_for(enrollment_id)
    assert len(jobs) == 1
    assert jobs[0].status == "failed"
    assert jobs[0].attempts == 5
    assert jobs[0].last_error == LMS_DOWN.error

    async with SessionLocal() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
    assert enrollment is not None
    assert enrollment.lms_sync_status == "failed"
    assert enrollment.lms_sync_attempts == 7

    await make_jobs_due(enrollment_id)
    assert (await process_lms_sync_queue(batch_size=10, worker_id="test-worker"))["processed"] == 0

    result = await manual_resync(enrollment_id)
    assert result.synced is True

    async with SessionLocal() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
        failed = await list_failed_syncs(session)
    assert enrollment is not None
    assert enrollment.lms_sync_status == "success"
    assert enrollment.lms_last_error is None
    assert failed == []


@pytest.mark.asyncio
async def test_queue_success_completes_job_and_marks_enrollment_synced(monkeypatch) -> None:
    fakes, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)
    fakes.queue_lms_results([LmsEnrollmentResult(success=False, error="User is already enrolled")])

    await make_jobs_due(enrollment_id)
    summary = await process_lms_sync_queue(batch_size=10, worker_id="test-worker")

    assert summary["completed"] == 1
    jobs = await _jobs_for(enrollment_id)
    assert jobs[0].status == "completed"
    assert jobs[0].completed_at is not None
    async with SessionLocal() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
    assert enrollment is not None
    assert enrollment.lms_sync_status == "success"


@pytest.mark.asyncio
async def test_manual_resync_closes_open_retry_job(monkeypatch) -> None:
    _, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)

    results = await manual_resync_all()

    assert [item.enrollment_id for item in results] == [enrollment_id]
    assert results[0].synced is True
    jobs = await _jobs_for(enrollment_id)
    assert jobs[0].status == "completed"


@pytest.mark.asyncio
async def test_stale_lease_is_released_and_late_report_is_rejected(monkeypatch) -> None:
    _, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)
    await make_jobs_due(enrollment_id)

    now_utc = datetime.now(UTC)
    async with SessionLocal.begin() as session:
        claimed = await LmsRetryQueue.claim_next(session, worker_id="crashed-worker", now_utc=now_utc)
        assert claimed is not None
        job_id = claimed.id

    async with SessionLocal.begin() as session:
        await session.execute(
            update(RetryJob)
            .where(RetryJob.id == job_id)
            .values(lease_expires_at=now_utc - timedelta(minutes=1))
        )

    summary = await process_lms_sync_queue(batch_size=10, worker_id="test-worker")
    assert summary["released"] == 1
    assert summary["processed"] == 0

    jobs = await _jobs_for(enrollment_id)
    assert jobs[0].status == "pending"
    assert jobs[0].worker_id is None
    assert jobs[0].next_retry_at > now_utc

    async with SessionLocal.begin() as session:
        outcome = await LmsRetryQueue.report_outcome(
            session,
            job_id=job_id,
            worker_id="crashed-worker",
            result=LmsEnrollmentResult(success=True),
            now_utc=datetime.now(UTC),
        )
    assert outcome == OUTCOME_LEASE_LOST


@pytest.mark.asyncio
async def test_enqueue_returns_existing_open_job(monkeypatch) -> None:
    _, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)
    existing = (await _jobs_for(enrollment_id))[0]

    async with SessionLocal.begin() as session:
        job = await LmsRetryQueue.enqueue(
            session,
            enrollment_id=enrollment_id,
            payload={"user_email": STUDENT_EMAIL, "course_id": COURSE_ID},
            now_utc=datetime.now(UTC),
        )

    assert job.id == existing.id
    assert len(await _jobs_for(enrollment_id)) == 1

    async with SessionLocal() as session:
        stats = await LmsRetryQueue.stats(session, now_utc=datetime.now(UTC))
    assert stats.pending == 1
    assert stats.health == "healthy"


@pytest.mark.asyncio
async def test_job_for_enrollment_synced_elsewhere_completes_without_touching_enrollment(monkeypatch) -> None:
    fakes, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)
    async with SessionLocal.begin() as session:
        await EnrollmentsRepo.mark_lms_synced(
            session,
            enrollment_id=enrollment_id,
            lms_enrollment_id="LMS-MANUAL",
            attempts_increment=1,
            now_utc=datetime.now(UTC),
        )

    await make_jobs_due(enrollment_id)
    summary = await process_lms_sync_queue(batch_size=10, worker_id="test-worker")

    assert summary["completed"] == 1
    assert len(fakes.lms_calls) == 2
    jobs = await _jobs_for(enrollment_id)
    assert jobs[0].status == "completed"
    assert jobs[0].worker_id is None
    async with SessionLocal() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
    assert enrollment is not None
    assert enrollment.lms_sync_status == "success"
    assert enrollment.lms_enrollment_id == "LMS-MANUAL"
    assert enrollment.lms_sync_attempts == 3


@pytest.mark.asyncio
async def test_immediate_sync_does_not_enqueue_when_resync_landed_meanwhile(monkeypatch) -> None:
    install_fake_collaborators(monkeypatch)
    calls: list[dict] = []

    async def lms_down_while_resync_lands(payload: dict) -> LmsEnrollmentResult:
        calls.append(payload)
        if len(calls) == 2:
            async with SessionLocal.begin() as session:
                enrollment = await EnrollmentsRepo.get_active_for_course_email(
                    session,
                    course_id=COURSE_ID,
                    email=STUDENT_EMAIL,
                )
                assert enrollment is not None
                await EnrollmentsRepo.mark_lms_synced(
                    session,
                    enrollment_id=enrollment.id,
                    lms_enrollment_id="LMS-MANUAL",
                    attempts_increment=1,
                    now_utc=datetime.now(UTC),
                )
        return LMS_DOWN

    monkeypatch.setattr(lms_service, "enroll_in_lms", lms_down_while_resync_lands)
    await create_course()
    await create_coupon(code="FREE100-RACE", discount_percentage=100)

    outcome = await initiate_checkout(
        CheckoutRequest(course_id=COURSE_ID, email=STUDENT_EMAIL, coupon_code="FREE100-RACE")
    )

    assert isinstance(outcome, FreeEnrollment)
    assert len(calls) == 2
    assert await _jobs_for(outcome.enrollment_id) == []
    async with SessionLocal() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, outcome.enrollment_id)
    assert enrollment is not None
    assert enrollment.lms_sync_status == "success"
    assert enrollment.lms_enrollment_id == "LMS-MANUAL"
    assert enrollment.lms_retry_job_id is None


@pytest.mark.asyncio
async def test_already_enrolled_reply_keeps_recorded_lms_id(monkeypatch) -> None:
    _, enrollment_id = await _free_enrollment_with_failed_immediate_sync(monkeypatch)
    now_utc = datetime.now(UTC)
    async with SessionLocal.begin() as session:
        await EnrollmentsRepo.mark_lms_synced(
            session,
            enrollment_id=enrollment_id,
            lms_enrollment_id="LMS-FIRST",
            attempts_increment=1,
            now_utc=now_utc,
        )
        await EnrollmentsRepo.mark_lms_synced(
            session,
            enrollment_id=enrollment_id,
            lms_enrollment_id=None,
            attempts_increment=1,
            now_utc=now_utc,
        )

    async with SessionLocal() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
    assert enrollment is not None
    assert enrollment.lms_enrollment_id == "LMS-FIRST"
