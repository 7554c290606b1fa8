from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, func, not_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.enrollments import Enrollment

ACTIVE_ENROLLMENT_STATUSES = ("pending", "paid")


class EnrollmentsRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, enrollment_id: UUID) -> Enrollment | None:
        return await session.get(Enrollment, enrollment_id)

    @staticmethod
    async def get_by_id_for_update(session: AsyncSession, enrollment_id: UUID) -> Enrollment | None:
        stmt = select(Enrollment).where(Enrollment.id == enrollment_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_active_for_course_email(
        session: AsyncSession,
        *,
        course_id: str,
        email: str,
    ) -> Enrollment | None:
        stmt = (
            select(Enrollment)
            .where(
                Enrollment.course_id == course_id,
                Enrollment.email == email,
                Enrollment.status.in_(ACTIVE_ENROLLMENT_STATUSES),
            )
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(session: AsyncSession, *, enrollment: Enrollment) -> Enrollment:
        session.add(enrollment)
        await session.flush()
        return enrollment

    @staticmethod
    async def set_payment_session(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        payment_session_id: str,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(Enrollment)
            .where(Enrollment.id == enrollment_id, Enrollment.status == "pending")
            .values(payment_session_id=payment_session_id, updated_at=now_utc)
            .returning(Enrollment.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def transition_to_paid(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        event_id: str,
        payment_id: str,
        now_utc: datetime,
    ) -> Enrollment | None:
        stmt = (
            update(Enrollment)
            .where(
                Enrollment.id == enrollment_id,
                Enrollment.status == "pending",
                not_(Enrollment.processed_event_ids.any(event_id)),
            )
            .values(
                status="paid",
                payment_id=payment_id,
                paid_at=now_utc,
                updated_at=now_utc,
                lms_sync_status="pending",
                processed_event_ids=func.array_append(Enrollment.processed_event_ids, event_id),
            )
            .returning(Enrollment)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def record_event_id(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        event_id: str,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(Enrollment)
            .where(
                Enrollment.id == enrollment_id,
                not_(Enrollment.processed_event_ids.any(event_id)),
            )
            .values(
                processed_event_ids=func.array_append(Enrollment.processed_event_ids, event_id),
                updated_at=now_utc,
            )
            .returning(Enrollment.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def transition_to_failed(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        event_id: str,
        now_utc: datetime,
    ) -> Enrollment | None:
        stmt = (
            update(Enrollment)
            .where(
                Enrollment.id == enrollment_id,
                Enrollment.status == "pending",
                not_(Enrollment.processed_event_ids.any(event_id)),
            )
            .values(
                status="failed",
                updated_at=now_utc,
                processed_event_ids=func.array_append(Enrollment.processed_event_ids, event_id),
            )
            .returning(Enrollment)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def delete_pending(session: AsyncSession, *, enrollment_id: UUID) -> Enrollment | None:
        stmt = (
            delete(Enrollment)
            .where(Enrollment.id == enrollment_id, Enrollment.status == "pending")
            .returning(Enrollment)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_commission_processed(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        commission_amount: Decimal,
        commission_base_amount: Decimal,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(Enrollment)
            .where(
                Enrollment.id == enrollment_id,
                Enrollment.status == "paid",
                Enrollment.commission_processed.is_not(True),
            )
            .values(
                commission_processed=True,
                commission_amount=commission_amount,
                commission_base_amount=commission_base_amount,
                commission_processed_at=now_utc,
                updated_at=now_utc,
            )
            .returning(Enrollment.id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def mark_lms_synced(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        lms_enrollment_id: str | None,
        attempts_increment: int,
        now_utc: datetime,
    ) -> None:
        values: dict[str, object] = {
            "lms_sync_status": "success",
            "lms_sync_attempts": Enrollment.lms_sync_attempts + attempts_increment,
            "lms_last_error": None,
            "lms_synced_at": now_utc,
            "updated_at": now_utc,
        }
        # "Already enrolled" replies carry no id; keep the one already recorded.
        if lms_enrollment_id is not None:
            values["lms_enrollment_id"] = lms_enrollment_id
        await session.execute(update(Enrollment).where(Enrollment.id == enrollment_id).values(**values))

    @staticmethod
    async def mark_lms_sync_failure(
        session: AsyncSession,
        *,
        enrollment_id: UUID,
        sync_status: str,
        attempts_increment: int,
        last_error: str | None,
        retry_job_id: UUID | None,
        now_utc: datetime,
    ) -> None:
        values: dict[str, object] = {
            "lms_sync_status": sync_status,
            "lms_sync_attempts": Enrollment.lms_sync_attempts + attempts_increment,
            "lms_last_error": last_error,
            "updated_at": now_utc,
        }
        if retry_job_id is not None:
            values["lms_retry_job_id"] = retry_job_id
        await session.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment_id, Enrollment.lms_sync_status != "success")
            .values(**values)
        )

    @staticmethod
    async def list_paid_commission_unprocessed(
        session: AsyncSession,
        *,
        paid_before_utc: datetime,
        limit: int = 100,
    ) -> list[Enrollment]:
        stmt = (
            select(Enrollment)
            .where(
                Enrollment.status == "paid",
                Enrollment.affiliate_email.is_not(None),
                Enrollment.commission_processed.is_(False),
                Enrollment.paid_at.is_not(None),
                Enrollment.paid_at <= paid_before_utc,
            )
            .order_by(Enrollment.paid_at.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_pending_created_before(
        session: AsyncSession,
        *,
        created_before_utc: datetime,
        limit: int = 100,
    ) -> list[Enrollment]:
        stmt = (
            select(Enrollment)
            .where(Enrollment.status == "pending", Enrollment.created_at <= created_before_utc)
            .order_by(Enrollment.created_at.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_paid_unsynced(
        session: AsyncSession,
        *,
        sync_statuses: tuple[str, ...],
        limit: int = 20,
    ) -> list[Enrollment]:
        stmt = (
            select(Enrollment)
            .where(Enrollment.status == "paid", Enrollment.lms_sync_status.in_(sync_statuses))
            .order_by(Enrollment.paid_at.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
