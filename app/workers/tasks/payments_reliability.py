from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog

from app.commerce.commissions.service import CommissionLedger
from app.commerce.enrollments.service import EnrollmentLedger
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.db.session import SessionLocal
from app.services.payments_gateway import CHECKOUT_SESSION_LIFETIME
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import celery_app
from app.workers.tasks.payments_reliability_schedule import configure_payments_reliability_schedule

logger = structlog.get_logger(__name__)

# A pending row is only abandoned once its hosted session can no longer be paid.
ABANDONED_CHECKOUT_MIN_AGE = CHECKOUT_SESSION_LIFETIME + timedelta(hours=1)


async def reconcile_commissions_async(*, batch_size: int = 100, stale_minutes: int = 5) -> dict[str, int]:
    now_utc = datetime.now(timezone.utc)
    paid_before = now_utc - timedelta(minutes=stale_minutes)

    async with SessionLocal.begin() as session:
        candidates = await EnrollmentsRepo.list_paid_commission_unprocessed(
            session,
            paid_before_utc=paid_before,
            limit=batch_size,
        )
        enrollment_ids = [enrollment.id for enrollment in candidates]

    summary: dict[str, int] = {
        "examined": len(enrollment_ids),
        "recorded": 0,
        "skipped": 0,
        "errors": 0,
    }
    for enrollment_id in enrollment_ids:
        try:
            async with SessionLocal.begin() as session:
                result = await CommissionLedger.record_commission(
                    session,
                    enrollment_id=enrollment_id,
                    now_utc=now_utc,
                )
        except Exception:
            summary["errors"] += 1
            logger.exception("commission_reconciliation_error", enrollment_id=str(enrollment_id))
            continue

        if result.recorded:
            summary["recorded"] += 1
        else:
            summary["skipped"] += 1

    if summary["recorded"] > 0 or summary["errors"] > 0:
        logger.warning("commission_reconciliation_healed", **summary)
    else:
        logger.info("commission_reconciliation_finished", **summary)
    return summary


async def cancel_abandoned_checkouts_async(*, batch_size: int = 200, stale_hours: int = 24) -> dict[str, int]:
    stale_after = max(timedelta(hours=stale_hours), ABANDONED_CHECKOUT_MIN_AGE)
    created_before = datetime.now(timezone.utc) - stale_after

    async with SessionLocal.begin() as session:
        candidates = await EnrollmentsRepo.list_pending_created_before(
            session,
            created_before_utc=created_before,
            limit=batch_size,
        )
        enrollment_ids = [enrollment.id for enrollment in candidates]

    summary: dict[str, int] = {
        "examined": len(enrollment_ids),
        "cancelled": 0,
        "errors": 0,
    }
    for enrollment_id in enrollment_ids:
        try:
            async with SessionLocal.begin() as session:
                cancelled = await EnrollmentLedger.cancel(session, enrollment_id=enrollment_id)
        except Exception:
            summary["errors"] += 1
            logger.exception("abandoned_checkout_cancel_error", enrollment_id=str(enrollment_id))
            continue
        if cancelled:
            summary["cancelled"] += 1

    logger.info("abandoned_checkouts_sweep_finished", **summary)
    return summary


@celery_app.task(name="app.workers.tasks.payments_reliability.reconcile_commissions")
def reconcile_commissions(batch_size: int = 100, stale_minutes: int = 5) -> dict[str, int]:
    return run_async_job(reconcile_commissions_async(batch_size=batch_size, stale_minutes=stale_minutes))


@celery_app.task(name="app.workers.tasks.payments_reliability.cancel_abandoned_checkouts")
def cancel_abandoned_checkouts(batch_size: int = 200, stale_hours: int = 24) -> dict[str, int]:
    return run_async_job(cancel_abandoned_checkouts_async(batch_size=batch_size, stale_hours=stale_hours))


configure_payments_reliability_schedule(celery_app)
