from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','paid','failed','cancelled')",
            name="ck_enrollments_status",
        ),
        CheckConstraint(
            "enrollment_type IN ('paid','free_grant','partial_grant')",
            name="ck_enrollments_type",
        ),
        CheckConstraint(
            "lms_sync_status IN ('pending','retrying','success','failed')",
            name="ck_enrollments_lms_sync_status",
        ),
        CheckConstraint("amount >= 0", name="ck_enrollments_amount_non_negative"),
        CheckConstraint(
            "amount = original_price - discount_amount",
            name="ck_enrollments_final_amount",
        ),
        CheckConstraint("email = lower(email)", name="ck_enrollments_email_lower"),
        Index(
            "uq_enrollments_active_course_email",
            "course_id",
            "email",
            unique=True,
            postgresql_where=text("status IN ('pending','paid')"),
        ),
        Index("idx_enrollments_affiliate_status", "affiliate_email", "status"),
        Index(
            "idx_enrollments_pending_created_at",
            "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            "idx_enrollments_paid_lms_sync_status",
            "lms_sync_status",
            postgresql_where=text("status = 'paid'"),
        ),
        Index(
            "idx_enrollments_commission_unprocessed",
            "paid_at",
            postgresql_where=text(
                "status = 'paid' AND affiliate_email IS NOT NULL AND commission_processed = false"
            ),
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(128), ForeignKey("courses.id"), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    enrollment_type: Mapped[str] = mapped_column(String(16), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    original_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, server_default=text("0"))
    discount_percentage: Mapped[int] = mapped_column(SmallInteger, nullable=False, server_default=text("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'usd'"))
    coupon_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("coupons.id"),
        nullable=True,
    )
    payment_session_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    affiliate_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("affiliates.id"),
        nullable=True,
    )
    affiliate_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    commission_base_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, server_default=text("0"))
    commission_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    commission_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lms_sync_status: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'pending'"))
    lms_enrollment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lms_retry_job_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    lms_sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    lms_last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    lms_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    processed_event_ids: Mapped[list[str]] = mapped_column(
        ARRAY(String(255)),
        nullable=False,
        server_default=text("'{}'::varchar[]"),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
