"""course_checkout_core_schema

Revision ID: 3c1f9a2b7d40
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3c1f9a2b7d40"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("price > 0", name="ck_courses_price_positive"),
    )

    op.create_table(
        "affiliates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False, server_default=sa.text("10")),
        sa.Column("total_referrals", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_revenue", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_commission", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("pending_commissions", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_paid", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "courses_sold",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("stats_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status IN ('active','inactive','suspended')", name="ck_affiliates_status"),
        sa.CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 100",
            name="ck_affiliates_commission_rate_range",
        ),
        sa.CheckConstraint("email = lower(email)", name="ck_affiliates_email_lower"),
        sa.UniqueConstraint("email", name="uq_affiliates_email"),
    )

    op.create_table(
        "coupons",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("course_id", sa.String(128), nullable=False),
        sa.Column("discount_percentage", sa.SmallInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by", sa.String(320), nullable=True),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reserved_by", sa.String(320), nullable=True),
        sa.Column("reservation_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "discount_percentage BETWEEN 1 AND 100",
            name="ck_coupons_discount_percentage_range",
        ),
        sa.CheckConstraint("status IN ('pending','approved','rejected')", name="ck_coupons_status"),
        sa.CheckConstraint("code = upper(code)", name="ck_coupons_code_upper"),
        sa.CheckConstraint("email = lower(email)", name="ck_coupons_email_lower"),
        sa.CheckConstraint("NOT used OR used_at IS NOT NULL", name="ck_coupons_used_has_timestamp"),
        sa.ForeignKeyConstraint(["course_id"], ["courses.id"]),
        sa.UniqueConstraint("code", name="uq_coupons_code"),
    )
    op.create_index("idx_coupons_email_course", "coupons", ["email", "course_id"])
    op.create_index(
        "idx_coupons_reservation_expiry",
        "coupons",
        ["reservation_expiry"],
        postgresql_where=sa.text("reservation_expiry IS NOT NULL AND used = false"),
    )

    op.create_table(
        "enrollments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("course_id", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("enrollment_type", sa.String(16), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("original_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_percentage", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'usd'")),
        sa.Column("coupon_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("payment_session_id", sa.String(255), nullable=True),
        sa.Column("payment_id", sa.String(255), nullable=True),
        sa.Column("affiliate_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("affiliate_email", sa.String(320), nullable=True),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("commission_base_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("commission_amount", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("commission_processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("commission_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lms_sync_status", sa.String(16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("lms_enrollment_id", sa.String(255), nullable=True),
        sa.Column("lms_retry_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("lms_sync_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lms_last_error", sa.Text(), nullable=True),
        sa.Column("lms_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "processed_event_ids",
            postgresql.ARRAY(sa.String(255)),
            nullable=False,
            server_default=sa.text("'{}'::varchar[]"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('pending','paid','failed','cancelled')", name="ck_enrollments_status"),
        sa.CheckConstraint(
            "enrollment_type IN ('paid','free_grant','partial_grant')",
            name="ck_enrollments_type",
        ),
        sa.CheckConstraint(
            "lms_sync_status IN ('pending','retrying','success','failed')",
            name="ck_enrollments_lms_sync_status",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_enrollments_amount_non_negative"),
        sa.CheckConstraint("amount = original_price - discount_amount", name="ck_enrollments_final_amount"),
        sa.CheckConstraint("email = lower(email)", name="ck_enrollments_email_lower"),
        sa.ForeignKeyConstraint(["course_id"], ["courses.id"]),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"]),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"]),
        sa.UniqueConstraint("payment_session_id", name="uq_enrollments_payment_session_id"),
    )
    op.create_index(
        "uq_enrollments_active_course_email",
        "enrollments",
        ["course_id", "email"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending','paid')"),
    )
    op.create_index("idx_enrollments_affiliate_status", "enrollments", ["affiliate_email", "status"])
    op.create_index(
        "idx_enrollments_pending_created_at",
        "enrollments",
        ["created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "idx_enrollments_paid_lms_sync_status",
        "enrollments",
        ["lms_sync_status"],
        postgresql_where=sa.text("status = 'paid'"),
    )
    op.create_index(
        "idx_enrollments_commission_unprocessed",
        "enrollments",
        ["paid_at"],
        postgresql_where=sa.text("status = 'paid' AND affiliate_email IS NOT NULL AND commission_processed = false"),
    )

    op.create_table(
        "retry_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("attempts", sa.SmallInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.SmallInteger(), nullable=False, server_default=sa.text("5")),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(128), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("job_type IN ('lms_enrollment')", name="ck_retry_jobs_job_type"),
        sa.CheckConstraint(
            "status IN ('pending','processing','completed','failed')",
            name="ck_retry_jobs_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_retry_jobs_attempts_non_negative"),
        sa.CheckConstraint("max_attempts BETWEEN 1 AND 10", name="ck_retry_jobs_max_attempts_range"),
        sa.CheckConstraint(
            "status <> 'processing' OR (worker_id IS NOT NULL AND lease_expires_at IS NOT NULL)",
            name="ck_retry_jobs_processing_has_lease",
        ),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "idx_retry_jobs_pending_next_retry_at",
        "retry_jobs",
        ["next_retry_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "idx_retry_jobs_processing_lease",
        "retry_jobs",
        ["lease_expires_at"],
        postgresql_where=sa.text("status = 'processing'"),
    )
    op.create_index(
        "uq_retry_jobs_open_enrollment_job_type",
        "retry_jobs",
        ["enrollment_id", "job_type"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending','processing')"),
    )


def downgrade() -> None:
    op.drop_index("uq_retry_jobs_open_enrollment_job_type", table_name="retry_jobs")
    op.drop_index("idx_retry_jobs_processing_lease", table_name="retry_jobs")
    op.drop_index("idx_retry_jobs_pending_next_retry_at", table_name="retry_jobs")
    op.drop_table("retry_jobs")

    op.drop_index("idx_enrollments_commission_unprocessed", table_name="enrollments")
    op.drop_index("idx_enrollments_paid_lms_sync_status", table_name="enrollments")
    op.drop_index("idx_enrollments_pending_created_at", table_name="enrollments")
    op.drop_index("idx_enrollments_affiliate_status", table_name="enrollments")
    op.drop_index("uq_enrollments_active_course_email", table_name="enrollments")
    op.drop_table("enrollments")

    op.drop_index("idx_coupons_reservation_expiry", table_name="coupons")
    op.drop_index("idx_coupons_email_course", table_name="coupons")
    op.drop_table("coupons")

    op.drop_table("affiliates")
    op.drop_table("courses")
