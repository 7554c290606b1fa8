from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

LMS_ENROLLMENT_JOB_TYPE = "lms_enrollment"

LMS_SYNC_STATUS_PENDING = "pending"
LMS_SYNC_STATUS_RETRYING = "retrying"
LMS_SYNC_STATUS_SUCCESS = "success"
LMS_SYNC_STATUS_FAILED = "failed"


@dataclass(slots=True)
class LmsSyncResult:
    enrollment_id: UUID
    status: str
    lms_enrollment_id: str | None = None
    retry_job_id: UUID | None = None
    error: str | None = None

    @property
    def synced(self) -> bool:
        return self.status in {"synced", "already_synced"}


@dataclass(slots=True)
class RetryQueueStats:
    counts_by_status: dict[str, int] = field(default_factory=dict)
    oldest_due_at: datetime | None = None
    oldest_due_job_id: UUID | None = None

    @property
    def pending(self) -> int:
        return self.counts_by_status.get("pending", 0)

    @property
    def health(self) -> str:
        if self.pending >= 500:
            return "critical"
        if self.pending >= 100:
            return "warning"
        return "healthy"


@dataclass(slots=True)
class FailedLmsSync:
    enrollment_id: UUID
    email: str
    course_id: str
    lms_sync_status: str
    lms_sync_attempts: int
    lms_last_error: str | None
    paid_at: datetime | None
    retry_job_id: UUID | None = None
    retry_job_status: str | None = None
    retry_job_attempts: int | None = None
    next_retry_at: datetime | None = None
