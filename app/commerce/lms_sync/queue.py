from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.commerce.lms_sync.backoff import RETRY_BASE_DELAY, compute_retry_delay
from app.commerce.lms_sync.types import (
    LMS_ENROLLMENT_JOB_TYPE,
    LMS_SYNC_STATUS_FAILED,
    LMS_SYNC_STATUS_RETRYING,
    RetryQueueStats,
)
from app.db.models.retry_jobs import RetryJob
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.db.repo.retry_jobs_repo import RetryJobsRepo
from app.services.lms_client import LMS_ERROR_MAX_LENGTH, LmsEnrollmentResult

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
LEASE_TIMEOUT = timedelta(minutes=10)
STALE_LEASE_RETRY_DELAY = timedelta(minutes=2)

OUTCOME_COMPLETED = "completed"
OUTCOME_RESCHEDULED = "rescheduled"
OUTCOME_FAILED = "failed"
OUTCOME_LEASE_LOST = "lease_lost"


class LmsRetryQueue:
    @staticmethod
    async def enqueue(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        payload: dict[str, Any],
        now_utc: datetime,
        initial_delay: timedelta = RETRY_BASE_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> RetryJob:
        existing = await RetryJobsRepo.get_open_for_enrollment(
            session,
            enrollment_id=enrollment_id,
            job_type=LMS_ENROLLMENT_JOB_TYPE,
        )
        if existing is not None:
            return existing

        job = RetryJob(
            id=uuid4(),
            job_type=LMS_ENROLLMENT_JOB_TYPE,
            enrollment_id=enrollment_id,
            payload=payload,
            status="pending",
            attempts=0,
            max_attempts=max_attempts,
            next_retry_at=now_utc + initial_delay,
            created_at=now_utc,
            updated_at=now_utc,
        )
        try:
            async with session.begin_nested():
                await RetryJobsRepo.create(session, job=job)
        except IntegrityError:
            existing = await RetryJobsRepo.get_open_for_enrollment(
                session,
                enrollment_id=enrollment_id,
                job_type=LMS_ENROLLMENT_JOB_TYPE,
            )
            if existing is None:
                raise
            return existing

        logger.info(
            "retry_job_enqueued",
            retry_job_id=str(job.id),
            enrollment_id=str(enrollment_id),
            next_retry_at=job.next_retry_at.isoformat(),
        )
        return job

    @staticmethod
    async def claim_next(
        session: AsyncSession,
        *,
        worker_id: str,
        now_utc: datetime,
        lease_timeout: timedelta = LEASE_TIMEOUT,
    ) -> RetryJob | None:
        job = await RetryJobsRepo.lock_next_due(session, now_utc=now_utc)
        if job is None:
            return None

        job.status = "processing"
        job.worker_id = worker_id
        job.processing_started_at = now_utc
        job.lease_expires_at = now_utc + lease_timeout
        job.updated_at = now_utc
        await session.flush()

        logger.info(
            "retry_job_claimed",
            retry_job_id=str(job.id),
            enrollment_id=str(job.enrollment_id),
            worker_id=worker_id,
            attempts=job.attempts,
        )
        return job

    @staticmethod
    async def _lock_leased_job(
        session: AsyncSession,
        *,
        job_id: UUID,
        worker_id: str,
        now_utc: datetime,
    ) -> RetryJob | None:
        job = await RetryJobsRepo.get_by_id_for_update(session, job_id)
        if job is None or job.status != "processing" or job.worker_id != worker_id:
            logger.warning(
                "retry_job_report_rejected",
                retry_job_id=str(job_id),
                worker_id=worker_id,
                reason="lease_lost",
            )
            return None

        job.worker_id = None
        job.processing_started_at = None
        job.lease_expires_at = None
        job.updated_at = now_utc
        return job

    @staticmethod
    async def complete_already_synced(
        session: AsyncSession,
        *,
        job_id: UUID,
        worker_id: str,
        now_utc: datetime,
    ) -> str:
        """Close a leased job whose enrollment was synced by another path.

        The enrollment row is left untouched so its LMS id and attempt count
        stay as the successful sync recorded them.
        """
        job = await LmsRetryQueue._lock_leased_job(session, job_id=job_id, worker_id=worker_id, now_utc=now_utc)
        if job is None:
            return OUTCOME_LEASE_LOST

        job.status = "completed"
        job.completed_at = now_utc
        job.last_error = None
        logger.info(
            "retry_job_completed",
            retry_job_id=str(job.id),
            enrollment_id=str(job.enrollment_id),
            attempts=job.attempts,
            already_synced=True,
        )
        return OUTCOME_COMPLETED

    @staticmethod
    async def report_outcome(
        session: AsyncSession,
        *,
        job_id: UUID,
        worker_id: str,
        result: LmsEnrollmentResult,
        now_utc: datetime,
        rng: random.Random | None = None,
    ) -> str:
        job = await LmsRetryQueue._lock_leased_job(session, job_id=job_id, worker_id=worker_id, now_utc=now_utc)
        if job is None:
            return OUTCOME_LEASE_LOST

        if result.success or result.already_enrolled:
            job.status = "completed"
            job.completed_at = now_utc
            job.last_error = None
            await EnrollmentsRepo.mark_lms_synced(
                session,
                enrollment_id=job.enrollment_id,
                lms_enrollment_id=result.enrollment_id,
                attempts_increment=1,
                now_utc=now_utc,
            )
            logger.info(
                "retry_job_completed",
                retry_job_id=str(job.id),
                enrollment_id=str(job.enrollment_id),
                attempts=job.attempts + 1,
            )
            return OUTCOME_COMPLETED

        job.attempts += 1
        job.last_error = (result.error or "LMS enrollment failed")[:LMS_ERROR_MAX_LENGTH]

        if job.attempts >= job.max_attempts:
            job.status = "failed"
            await EnrollmentsRepo.mark_lms_sync_failure(
                session,
                enrollment_id=job.enrollment_id,
                sync_status=LMS_SYNC_STATUS_FAILED,
                attempts_increment=1,
                last_error=job.last_error,
                retry_job_id=job.id,
                now_utc=now_utc,
            )
            logger.warning(
                "retry_job_failed",
                retry_job_id=str(job.id),
                enrollment_id=str(job.enrollment_id),
                attempts=job.attempts,
            )
            return OUTCOME_FAILED

        job.status = "pending"
        job.next_retry_at = now_utc + compute_retry_delay(job.attempts, rng=rng)
        await EnrollmentsRepo.mark_lms_sync_failure(
            session,
            enrollment_id=job.enrollment_id,
            sync_status=LMS_SYNC_STATUS_RETRYING,
            attempts_increment=1,
            last_error=job.last_error,
            retry_job_id=job.id,
            now_utc=now_utc,
        )
        logger.info(
            "retry_job_rescheduled",
            retry_job_id=str(job.id),
            enrollment_id=str(job.enrollment_id),
            attempts=job.attempts,
            next_retry_at=job.next_retry_at.isoformat(),
        )
        return OUTCOME_RESCHEDULED

    @staticmethod
    async def release_stale_leases(session: AsyncSession, *, now_utc: datetime) -> int:
        released = await RetryJobsRepo.release_stale_leases(
            session,
            now_utc=now_utc,
            next_retry_at=now_utc + STALE_LEASE_RETRY_DELAY,
        )
        if released:
            logger.warning("retry_job_stale_leases_released", released=released)
        return released

    @staticmethod
    async def complete_open_jobs(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        now_utc: datetime,
    ) -> int:
        return await RetryJobsRepo.complete_open_for_enrollment(
            session,
            enrollment_id=enrollment_id,
            now_utc=now_utc,
        )

    @staticmethod
    async def stats(session: AsyncSession, *, now_utc: datetime) -> RetryQueueStats:
        counts = await RetryJobsRepo.count_by_status(session, job_type=LMS_ENROLLMENT_JOB_TYPE)
        oldest_due = await RetryJobsRepo.get_oldest_due(
            session,
            job_type=LMS_ENROLLMENT_JOB_TYPE,
            now_utc=now_utc,
        )
        return RetryQueueStats(
            counts_by_status=counts,
            oldest_due_at=oldest_due.next_retry_at if oldest_due is not None else None,
            oldest_due_job_id=oldest_due.id if oldest_due is not None else None,
        )
