from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.commerce.enrollments.errors import EnrollmentNotFoundError, EnrollmentStateError
from app.commerce.lms_sync.queue import LmsRetryQueue
from app.commerce.lms_sync.types import (
    LMS_SYNC_STATUS_FAILED,
    LMS_SYNC_STATUS_RETRYING,
    LMS_SYNC_STATUS_SUCCESS,
    FailedLmsSync,
    LmsSyncResult,
)
from app.db.models.enrollments import Enrollment
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.db.repo.retry_jobs_repo import RetryJobsRepo
from app.db.session import SessionLocal
from app.services.lms_client import LmsEnrollmentResult, build_enrollment_request, enroll_in_lms

logger = structlog.get_logger(__name__)

IMMEDIATE_RETRY_PAUSE_SECONDS = 2.0
RESYNC_ALL_LIMIT = 20
RESYNC_CANDIDATE_STATUSES = ("pending", "retrying", "failed")
FAILED_LISTING_STATUSES = ("retrying", "failed")


def build_lms_payload(enrollment: Enrollment) -> dict[str, Any]:
    payload = build_enrollment_request(
        user_email=enrollment.email,
        course_id=enrollment.course_id,
        payment_id=enrollment.payment_id,
        amount=enrollment.amount,
        currency=enrollment.currency,
        referral_code=enrollment.affiliate_email,
        paid_status=True,
    )
    payload["enrollment_type"] = enrollment.enrollment_type
    return payload


def _is_accepted(result: LmsEnrollmentResult) -> bool:
    return result.success or result.already_enrolled


async def _mark_synced(
    session: AsyncSession,
    *,
    enrollment_id: UUID,
    result: LmsEnrollmentResult,
    attempts: int,
    now_utc: datetime,
) -> None:
    await EnrollmentsRepo.mark_lms_synced(
        session,
        enrollment_id=enrollment_id,
        lms_enrollment_id=result.enrollment_id,
        attempts_increment=attempts,
        now_utc=now_utc,
    )
    # Keep the queue consistent with the enrollment: an open job for an
    # already synced enrollment would otherwise be retried or left leased.
    await LmsRetryQueue.complete_open_jobs(session, enrollment_id=enrollment_id, now_utc=now_utc)


async def sync_enrollment_after_payment(
    enrollment_id: UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> LmsSyncResult:
    async with session_factory.begin() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
        if enrollment is None:
            return LmsSyncResult(enrollment_id=enrollment_id, status="missing")
        if enrollment.lms_sync_status == LMS_SYNC_STATUS_SUCCESS:
            return LmsSyncResult(
                enrollment_id=enrollment_id,
                status="already_synced",
                lms_enrollment_id=enrollment.lms_enrollment_id,
            )
        payload = build_lms_payload(enrollment)

    result = await enroll_in_lms(payload)
    attempts = 1
    if not _is_accepted(result):
        await sleep(IMMEDIATE_RETRY_PAUSE_SECONDS)
        result = await enroll_in_lms(payload)
        attempts = 2

    now_utc = datetime.now(timezone.utc)
    if _is_accepted(result):
        async with session_factory.begin() as session:
            await _mark_synced(
                session,
                enrollment_id=enrollment_id,
                result=result,
                attempts=attempts,
                now_utc=now_utc,
            )
        logger.info("lms_sync_succeeded", enrollment_id=str(enrollment_id), attempts=attempts)
        return LmsSyncResult(
            enrollment_id=enrollment_id,
            status="synced",
            lms_enrollment_id=result.enrollment_id,
        )

    try:
        async with session_factory.begin() as session:
            locked = await EnrollmentsRepo.get_by_id_for_update(session, enrollment_id)
            if locked is not None and locked.lms_sync_status == LMS_SYNC_STATUS_SUCCESS:
                logger.info("lms_sync_enqueue_skipped", enrollment_id=str(enrollment_id), reason="already_synced")
                return LmsSyncResult(
                    enrollment_id=enrollment_id,
                    status="already_synced",
                    lms_enrollment_id=locked.lms_enrollment_id,
                )
            job = await LmsRetryQueue.enqueue(
                session,
                enrollment_id=enrollment_id,
                payload=payload,
                now_utc=now_utc,
            )
            await EnrollmentsRepo.mark_lms_sync_failure(
                session,
                enrollment_id=enrollment_id,
                sync_status=LMS_SYNC_STATUS_RETRYING,
                attempts_increment=attempts,
                last_error=result.error,
                retry_job_id=job.id,
                now_utc=now_utc,
            )
    except Exception:
        logger.exception("lms_sync_enqueue_failed", enrollment_id=str(enrollment_id))
        async with session_factory.begin() as session:
            await EnrollmentsRepo.mark_lms_sync_failure(
                session,
                enrollment_id=enrollment_id,
                sync_status=LMS_SYNC_STATUS_FAILED,
                attempts_increment=attempts,
                last_error=result.error,
                retry_job_id=None,
                now_utc=now_utc,
            )
        return LmsSyncResult(enrollment_id=enrollment_id, status="failed", error=result.error)

    logger.warning(
        "lms_sync_queued_for_retry",
        enrollment_id=str(enrollment_id),
        retry_job_id=str(job.id),
        attempts=attempts,
    )
    return LmsSyncResult(
        enrollment_id=enrollment_id,
        status="queued",
        retry_job_id=job.id,
        error=result.error,
    )


async def manual_resync(
    enrollment_id: UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
) -> LmsSyncResult:
    async with session_factory.begin() as session:
        enrollment = await EnrollmentsRepo.get_by_id(session, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError
        if enrollment.status != "paid":
            raise EnrollmentStateError
        payload = build_lms_payload(enrollment)

    result = await enroll_in_lms(payload)
    now_utc = datetime.now(timezone.utc)
    async with session_factory.begin() as session:
        if _is_accepted(result):
            await _mark_synced(
                session,
                enrollment_id=enrollment_id,
                result=result,
                attempts=1,
                now_utc=now_utc,
            )
        else:
            await EnrollmentsRepo.mark_lms_sync_failure(
                session,
                enrollment_id=enrollment_id,
                sync_status=LMS_SYNC_STATUS_FAILED,
                attempts_increment=1,
                last_error=result.error,
                retry_job_id=None,
                now_utc=now_utc,
            )

    if _is_accepted(result):
        logger.info("lms_manual_resync_succeeded", enrollment_id=str(enrollment_id))
        return LmsSyncResult(
            enrollment_id=enrollment_id,
            status="synced",
            lms_enrollment_id=result.enrollment_id,
        )

    logger.warning("lms_manual_resync_failed", enrollment_id=str(enrollment_id))
    return LmsSyncResult(enrollment_id=enrollment_id, status="failed", error=result.error)


async def manual_resync_all(
    *,
    limit: int = RESYNC_ALL_LIMIT,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
) -> list[LmsSyncResult]:
    async with session_factory.begin() as session:
        candidates = await EnrollmentsRepo.list_paid_unsynced(
            session,
            sync_statuses=RESYNC_CANDIDATE_STATUSES,
            limit=limit,
        )
        enrollment_ids = [enrollment.id for enrollment in candidates]

    results: list[LmsSyncResult] = []
    for enrollment_id in enrollment_ids:
        results.append(await manual_resync(enrollment_id, session_factory=session_factory))
    return results


async def list_failed_syncs(
    session: AsyncSession,
    *,
    limit: int = 100,
) -> list[FailedLmsSync]:
    enrollments = await EnrollmentsRepo.list_paid_unsynced(
        session,
        sync_statuses=FAILED_LISTING_STATUSES,
        limit=limit,
    )
    jobs = await RetryJobsRepo.get_latest_for_enrollments(
        session,
        enrollment_ids=[enrollment.id for enrollment in enrollments],
    )

    items: list[FailedLmsSync] = []
    for enrollment in enrollments:
        job = jobs.get(enrollment.id)
        items.append(
            FailedLmsSync(
                enrollment_id=enrollment.id,
                email=enrollment.email,
                course_id=enrollment.course_id,
                lms_sync_status=enrollment.lms_sync_status,
                lms_sync_attempts=enrollment.lms_sync_attempts,
                lms_last_error=enrollment.lms_last_error,
                paid_at=enrollment.paid_at,
                retry_job_id=job.id if job is not None else None,
                retry_job_status=job.status if job is not None else None,
                retry_job_attempts=job.attempts if job is not None else None,
                next_retry_at=job.next_retry_at if job is not None else None,
            )
        )
    return items
