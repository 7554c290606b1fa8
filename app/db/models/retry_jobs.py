from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, SmallInteger, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class RetryJob(Base):
    __tablename__ = "retry_jobs"
    __table_args__ = (
        CheckConstraint("job_type IN ('lms_enrollment')", name="ck_retry_jobs_job_type"),
        CheckConstraint(
            "status IN ('pending','processing','completed','failed')",
            name="ck_retry_jobs_status",
        ),
        CheckConstraint("attempts >= 0", name="ck_retry_jobs_attempts_non_negative"),
        CheckConstraint("max_attempts BETWEEN 1 AND 10", name="ck_retry_jobs_max_attempts_range"),
        CheckConstraint(
            "status <> 'processing' OR (worker_id IS NOT NULL AND lease_expires_at IS NOT NULL)",
            name="ck_retry_jobs_processing_has_lease",
        ),
        Index(
            "idx_retry_jobs_pending_next_retry_at",
            "next_retry_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            "idx_retry_jobs_processing_lease",
            "lease_expires_at",
            postgresql_where=text("status = 'processing'"),
        ),
        Index(
            "uq_retry_jobs_open_enrollment_job_type",
            "enrollment_id",
            "job_type",
            unique=True,
            postgresql_where=text("status IN ('pending','processing')"),
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    enrollment_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
    )
    payload: Mapped[dict[str, object]] = mapped_column(JSONB, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, server_default=text("0"))
    max_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, server_default=text("5"))
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
