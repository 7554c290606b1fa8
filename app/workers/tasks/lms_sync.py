from __future__ import annotations

import structlog

from app.commerce.lms_sync.processor import process_lms_sync_queue
from app.workers.asyncio_runner import run_async_job
from app.workers.celery_app import celery_app
from app.workers.tasks.lms_sync_schedule import configure_lms_sync_schedule

logger = structlog.get_logger(__name__)


async def process_lms_sync_queue_async(*, batch_size: int | None = None) -> dict[str, int]:
    summary = await process_lms_sync_queue(batch_size=batch_size)
    if summary["failed"] > 0 or summary["errors"] > 0:
        logger.warning("lms_sync_queue_attention_required", **summary)
    return summary


@celery_app.task(name="app.workers.tasks.lms_sync.process_lms_sync_queue")
def run_lms_sync_queue(batch_size: int | None = None) -> dict[str, int]:
    return run_async_job(process_lms_sync_queue_async(batch_size=batch_size))


configure_lms_sync_schedule(celery_app)
