from __future__ import annotations

import os
import socket
from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.commerce.lms_sync.queue import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_LEASE_LOST,
    OUTCOME_RESCHEDULED,
    LmsRetryQueue,
)
from app.commerce.lms_sync.types import LMS_SYNC_STATUS_SUCCESS
from app.core.config import get_settings
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.db.session import SessionLocal
from app.services.lms_client import LmsEnrollmentResult, enroll_in_lms

logger = structlog.get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def _claim(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    worker_id: str,
) -> tuple[UUID, dict, bool] | None:
    now_utc = datetime.now(timezone.utc)
    async with session_factory.begin() as session:
        job = await LmsRetryQueue.claim_next(session, worker_id=worker_id, now_utc=now_utc)
        if job is None:
            return None
        enrollment = await EnrollmentsRepo.get_by_id(session, job.enrollment_id)
        already_synced = enrollment is not None and enrollment.lms_sync_status == LMS_SYNC_STATUS_SUCCESS
        return job.id, dict(job.payload or {}), already_synced


async def _report(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    job_id: UUID,
    worker_id: str,
    result: LmsEnrollmentResult,
) -> str:
    async with session_factory.begin() as session:
        return await LmsRetryQueue.report_outcome(
            session,
            job_id=job_id,
            worker_id=worker_id,
            result=result,
            now_utc=datetime.now(timezone.utc),
        )


async def _complete_already_synced(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    job_id: UUID,
    worker_id: str,
) -> str:
    async with session_factory.begin() as session:
        return await LmsRetryQueue.complete_already_synced(
            session,
            job_id=job_id,
            worker_id=worker_id,
            now_utc=datetime.now(timezone.utc),
        )


async def process_lms_sync_queue(
    *,
    batch_size: int | None = None,
    worker_id: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
) -> dict[str, int]:
    """Sweep stale leases, then work through up to ``batch_size`` due jobs.

    Each job is claimed in its own short transaction, the LMS is called
    with no transaction open, and the outcome is reported in a second
    transaction guarded by the lease.
    """
    limit = batch_size if batch_size is not None else get_settings().lms_sync_batch_size
    current_worker = worker_id or default_worker_id()

    async with session_factory.begin() as session:
        released = await LmsRetryQueue.release_stale_leases(session, now_utc=datetime.now(timezone.utc))

    summary: dict[str, int] = {
        "released": released,
        "processed": 0,
        "completed": 0,
        "rescheduled": 0,
        "failed": 0,
        "errors": 0,
    }

    for _ in range(limit):
        claimed = await _claim(session_factory, worker_id=current_worker)
        if claimed is None:
            break
        job_id, payload, already_synced = claimed
        summary["processed"] += 1

        try:
            if already_synced:
                outcome = await _complete_already_synced(session_factory, job_id=job_id, worker_id=current_worker)
            else:
                result = await enroll_in_lms(payload)
                outcome = await _report(
                    session_factory,
                    job_id=job_id,
                    worker_id=current_worker,
                    result=result,
                )
        except Exception:
            summary["errors"] += 1
            logger.exception("lms_sync_job_processing_error", retry_job_id=str(job_id))
            continue

        if outcome == OUTCOME_COMPLETED:
            summary["completed"] += 1
        elif outcome == OUTCOME_RESCHEDULED:
            summary["rescheduled"] += 1
        elif outcome == OUTCOME_FAILED:
            summary["failed"] += 1
        elif outcome == OUTCOME_LEASE_LOST:
            summary["errors"] += 1

    logger.info("lms_sync_queue_processed", worker_id=current_worker, **summary)
    return summary
