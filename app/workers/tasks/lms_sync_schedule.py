from __future__ import annotations


def configure_lms_sync_schedule(celery_app) -> None:
    celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
    celery_app.conf.beat_schedule.update(
        {
            "process-lms-sync-queue-every-5-minutes": {
                "task": "app.workers.tasks.lms_sync.process_lms_sync_queue",
                "schedule": 300.0,
                "options": {"queue": "q_high"},
            },
        }
    )
