from app.workers.tasks.lms_sync import run_lms_sync_queue
from app.workers.tasks.payments_reliability import cancel_abandoned_checkouts, reconcile_commissions

__all__ = [
    "cancel_abandoned_checkouts",
    "reconcile_commissions",
    "run_lms_sync_queue",
]
