from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from app.commerce.enrollments.errors import EnrollmentNotFoundError, EnrollmentStateError
from app.commerce.lms_sync.processor import process_lms_sync_queue
from app.commerce.lms_sync.queue import LmsRetryQueue
from app.commerce.lms_sync.service import RESYNC_ALL_LIMIT, list_failed_syncs, manual_resync, manual_resync_all
from app.commerce.lms_sync.types import LmsSyncResult
from app.db.session import SessionLocal
from app.services.internal_auth import assert_internal_access

router = APIRouter(tags=["internal", "lms-sync"])
logger = structlog.get_logger(__name__)


class QueueStatsResponse(BaseModel):
    generated_at: datetime
    counts_by_status: dict[str, int]
    pending: int = Field(ge=0)
    oldest_due_at: datetime | None
    oldest_due_job_id: UUID | None
    health: str


class ProcessQueueResponse(BaseModel):
    released: int = Field(ge=0)
    processed: int = Field(ge=0)
    completed: int = Field(ge=0)
    rescheduled: int = Field(ge=0)
    failed: int = Field(ge=0)
    errors: int = Field(ge=0)


class ResyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enrollment_id: UUID | None = Field(default=None, alias="enrollmentId")
    retry_all: bool = Field(default=False, alias="retryAll")


class ResyncItemResponse(BaseModel):
    enrollment_id: UUID
    status: str
    lms_enrollment_id: str | None = None
    error: str | None = None


class ResyncResponse(BaseModel):
    total: int = Field(ge=0)
    synced: int = Field(ge=0)
    failed: int = Field(ge=0)
    items: list[ResyncItemResponse]


class FailedSyncItemResponse(BaseModel):
    enrollment_id: UUID
    email: str
    course_id: str
    lms_sync_status: str
    lms_sync_attempts: int
    lms_last_error: str | None
    paid_at: datetime | None
    retry_job_id: UUID | None
    retry_job_status: str | None
    retry_job_attempts: int | None
    next_retry_at: datetime | None


class FailedSyncListResponse(BaseModel):
    items: list[FailedSyncItemResponse]


def _to_resync_response(results: list[LmsSyncResult]) -> ResyncResponse:
    synced = sum(1 for item in results if item.synced)
    return ResyncResponse(
        total=len(results),
        synced=synced,
        failed=len(results) - synced,
        items=[
            ResyncItemResponse(
                enrollment_id=item.enrollment_id,
                status=item.status,
                lms_enrollment_id=item.lms_enrollment_id,
                error=item.error,
            )
            for item in results
        ],
    )


@router.get("/internal/lms-sync/queue", response_model=QueueStatsResponse)
async def get_queue_stats(request: Request) -> QueueStatsResponse:
    assert_internal_access(request, scope="lms_sync")
    now_utc = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        stats = await LmsRetryQueue.stats(session, now_utc=now_utc)

    return QueueStatsResponse(
        generated_at=now_utc,
        counts_by_status=stats.counts_by_status,
        pending=stats.pending,
        oldest_due_at=stats.oldest_due_at,
        oldest_due_job_id=stats.oldest_due_job_id,
        health=stats.health,
    )


@router.post("/internal/lms-sync/process", response_model=ProcessQueueResponse)
async def process_queue(request: Request) -> ProcessQueueResponse:
    assert_internal_access(request, scope="lms_sync")
    summary = await process_lms_sync_queue()
    return ProcessQueueResponse(**summary)


@router.post("/internal/lms-sync/resync", response_model=ResyncResponse)
async def resync(request: Request, payload: ResyncRequest) -> ResyncResponse:
    assert_internal_access(request, scope="lms_sync")

    if payload.retry_all:
        results = await manual_resync_all(limit=RESYNC_ALL_LIMIT)
        logger.info("lms_manual_resync_all_finished", total=len(results))
        return _to_resync_response(results)

    if payload.enrollment_id is None:
        raise HTTPException(status_code=400, detail={"code": "E_ENROLLMENT_ID_REQUIRED"})

    try:
        result = await manual_resync(payload.enrollment_id)
    except EnrollmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_ENROLLMENT_NOT_FOUND"}) from exc
    except EnrollmentStateError as exc:
        raise HTTPException(status_code=409, detail={"code": "E_ENROLLMENT_NOT_PAID"}) from exc
    return _to_resync_response([result])


@router.get("/internal/lms-sync/failed", response_model=FailedSyncListResponse)
async def list_failed(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
) -> FailedSyncListResponse:
    assert_internal_access(request, scope="lms_sync")
    async with SessionLocal() as session:
        items = await list_failed_syncs(session, limit=limit)

    return FailedSyncListResponse(
        items=[
            FailedSyncItemResponse(
                enrollment_id=item.enrollment_id,
                email=item.email,
                course_id=item.course_id,
                lms_sync_status=item.lms_sync_status,
                lms_sync_attempts=item.lms_sync_attempts,
                lms_last_error=item.lms_last_error,
                paid_at=item.paid_at,
                retry_job_id=item.retry_job_id,
                retry_job_status=item.retry_job_status,
                retry_job_attempts=item.retry_job_attempts,
                next_retry_at=item.next_retry_at,
            )
            for item in items
        ]
    )
