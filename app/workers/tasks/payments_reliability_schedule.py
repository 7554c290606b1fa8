from __future__ import annotations


def configure_payments_reliability_schedule(celery_app) -> None:
    celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
    celery_app.conf.beat_schedule.update(
        {
            "reconcile-commissions-every-15-minutes": {
                "task": "app.workers.tasks.payments_reliability.reconcile_commissions",
                "schedule": 900.0,
                "options": {"queue": "q_normal"},
            },
            "cancel-abandoned-checkouts-hourly": {
                "task": "app.workers.tasks.payments_reliability.cancel_abandoned_checkouts",
                "schedule": 3600.0,
                "options": {"queue": "q_normal"},
            },
        }
    )

