from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, SmallInteger, String, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.models.base import Base


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint(
            "discount_percentage BETWEEN 1 AND 100",
            name="ck_coupons_discount_percentage_range",
        ),
        CheckConstraint("status IN ('pending','approved','rejected')", name="ck_coupons_status"),
        CheckConstraint("code = upper(code)", name="ck_coupons_code_upper"),
        CheckConstraint("email = lower(email)", name="ck_coupons_email_lower"),
        CheckConstraint(
            "NOT used OR used_at IS NOT NULL",
            name="ck_coupons_used_has_timestamp",
        ),
        Index("idx_coupons_email_course", "email", "course_id"),
        Index(
            "idx_coupons_reservation_expiry",
            "reservation_expiry",
            postgresql_where=text("reservation_expiry IS NOT NULL AND used = false"),
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    course_id: Mapped[str] = mapped_column(String(128), ForeignKey("courses.id"), nullable=False)
    discount_percentage: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reserved_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    reservation_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enrollment_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
