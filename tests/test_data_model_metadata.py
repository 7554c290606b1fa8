from __future__ import annotations

from sqlalchemy import CheckConstraint

from app.db.models import Affiliate, Coupon, Course, Enrollment, RetryJob  # noqa: F401
from app.db.models.base import Base


def _check_names(table_name: str) -> set[str]:
    table = Base.metadata.tables[table_name]
    return {constraint.name for constraint in table.constraints if isinstance(constraint, CheckConstraint)}


def _index_names(table_name: str) -> set[str]:
    return {index.name for index in Base.metadata.tables[table_name].indexes}


def test_all_checkout_tables_registered() -> None:
    expected_tables = {"courses", "coupons", "affiliates", "enrollments", "retry_jobs"}
    assert expected_tables == set(Base.metadata.tables)


def test_critical_constraints_present() -> None:
    enrollment_checks = _check_names("enrollments")
    assert "ck_enrollments_final_amount" in enrollment_checks
    assert "ck_enrollments_status" in enrollment_checks
    assert "ck_enrollments_lms_sync_status" in enrollment_checks

    enrollment_indexes = _index_names("enrollments")
    assert "uq_enrollments_active_course_email" in enrollment_indexes
    assert "idx_enrollments_pending_created_at" in enrollment_indexes
    assert "idx_enrollments_commission_unprocessed" in enrollment_indexes

    coupon_checks = _check_names("coupons")
    assert "ck_coupons_discount_percentage_range" in coupon_checks
    assert "ck_coupons_code_upper" in coupon_checks
    assert "idx_coupons_reservation_expiry" in _index_names("coupons")

    assert "ck_affiliates_commission_rate_range" in _check_names("affiliates")

    retry_checks = _check_names("retry_jobs")
    assert "ck_retry_jobs_processing_has_lease" in retry_checks
    retry_indexes = _index_names("retry_jobs")
    assert "uq_retry_jobs_open_enrollment_job_type" in retry_indexes
    assert "idx_retry_jobs_pending_next_retry_at" in retry_indexes


def test_active_enrollment_index_is_partial_and_unique() -> None:
    index = next(
        index
        for index in Base.metadata.tables["enrollments"].indexes
        if index.name == "uq_enrollments_active_course_email"
    )
    assert index.unique is True
    assert [column.name for column in index.columns] == ["course_id", "email"]
    assert "status IN ('pending','paid')" in str(index.dialect_options["postgresql"]["where"])
