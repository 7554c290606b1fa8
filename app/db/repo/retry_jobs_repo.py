from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.retry_jobs import RetryJob

OPEN_RETRY_JOB_STATUSES = ("pending", "processing")


class RetryJobsRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, job_id: UUID) -> RetryJob | None:
        return await session.get(RetryJob, job_id)

    @staticmethod
    async def get_by_id_for_update(session: AsyncSession, job_id: UUID) -> RetryJob | None:
        stmt = select(RetryJob).where(RetryJob.id == job_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_open_for_enrollment(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        job_type: str,
    ) -> RetryJob | None:
        stmt = select(RetryJob).where(
            RetryJob.enrollment_id == enrollment_id,
            RetryJob.job_type == job_type,
            RetryJob.status.in_(OPEN_RETRY_JOB_STATUSES),
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_latest_for_enrollments(
        session: AsyncSession,
        *,
        enrollment_ids: list[UUID],
    ) -> dict[UUID, RetryJob]:
        if not enrollment_ids:
            return {}
        stmt = (
            select(RetryJob)
            .where(RetryJob.enrollment_id.in_(enrollment_ids))
            .order_by(RetryJob.enrollment_id, RetryJob.created_at.desc())
            .distinct(RetryJob.enrollment_id)
        )
        result = await session.execute(stmt)
        return {job.enrollment_id: job for job in result.scalars().all()}

    @staticmethod
    async def create(session: AsyncSession, *, job: RetryJob) -> RetryJob:
        session.add(job)
        await session.flush()
        return job

    @staticmethod
    async def lock_next_due(session: AsyncSession, *, now_utc: datetime) -> RetryJob | None:
        stmt = (
            select(RetryJob)
            .where(RetryJob.status == "pending", RetryJob.next_retry_at <= now_utc)
            .order_by(RetryJob.next_retry_at.asc(), RetryJob.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def release_stale_leases(
        session: AsyncSession,
        *,
        now_utc: datetime,
        next_retry_at: datetime,
    ) -> int:
        stmt = (
            update(RetryJob)
            .where(RetryJob.status == "processing", RetryJob.lease_expires_at <= now_utc)
            .values(
                status="pending",
                worker_id=None,
                processing_started_at=None,
                lease_expires_at=None,
                next_retry_at=next_retry_at,
                updated_at=now_utc,
            )
            .returning(RetryJob.id)
        )
        result = await session.execute(stmt)
        return len(list(result.scalars().all()))

    @staticmethod
    async def complete_open_for_enrollment(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        now_utc: datetime,
    ) -> int:
        stmt = (
            update(RetryJob)
            .where(
                RetryJob.enrollment_id == enrollment_id,
                RetryJob.status.in_(OPEN_RETRY_JOB_STATUSES),
            )
            .values(
                status="completed",
                worker_id=None,
                lease_expires_at=None,
                last_error=None,
                completed_at=now_utc,
                updated_at=now_utc,
            )
            .returning(RetryJob.id)
        )
        result = await session.execute(stmt)
        return len(list(result.scalars().all()))

    @staticmethod
    async def count_by_status(session: AsyncSession, *, job_type: str) -> dict[str, int]:
        stmt = (
            select(RetryJob.status, func.count(RetryJob.id))
            .where(RetryJob.job_type == job_type)
            .group_by(RetryJob.status)
        )
        result = await session.execute(stmt)
        return {str(status): int(count) for status, count in result.all()}

    @staticmethod
    async def get_oldest_due(
        session: AsyncSession,
        *,
        job_type: str,
        now_utc: datetime,
    ) -> RetryJob | None:
        stmt = (
            select(RetryJob)
            .where(
                RetryJob.job_type == job_type,
                RetryJob.status == "pending",
                RetryJob.next_retry_at <= now_utc,
            )
            .order_by(RetryJob.next_retry_at.asc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
