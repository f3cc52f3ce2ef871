"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobcore.v1.infra.jobs.catalog import JobQueue, JobType
from jobcore.v1.infra.jobs.models import JobStatus


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing jobs via API."""

    type: JobType = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    scheduled_at: datetime | None = Field(
        default=None, description="Earliest execution time (defaults to now)"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, le=50, description="Override the family's attempt policy"
    )
    dedupe_key: str | None = Field(default=None, description="Deduplication key")


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: UUID
    type: JobType
    queue: JobQueue
    status: str
    deduplicated: bool = Field(
        default=False, description="Whether an active job with the same key existed"
    )


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    queue: str
    priority: int
    payload: dict[str, Any]
    status: str
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    next_attempt_at: datetime

    locked_at: datetime | None = None
    locked_by: str | None = None
    heartbeat_at: datetime | None = None

    result: dict[str, Any] | None = None
    error_code: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    dedupe_key: str | None = None
    request_id: str | None = None
    origin: str | None = None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class QueueStats(BaseModel):
    queue: JobQueue
    priority: int
    concurrency_limit: int
    by_status: dict[str, int]


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queues: list[QueueStats]
    queue_depth: int  # queued + running
    failed_last_hour: int


class JobActionRequest(BaseModel):
    """Schema for bulk job actions (requeue)."""

    job_ids: list[UUID] = Field(..., description="Job IDs to act upon")


class JobActionResponse(BaseModel):
    """Schema for job action responses."""

    success_ids: list[UUID]
    failed_ids: list[UUID]
    errors: dict[str, str]  # job_id -> error message


class CleanupRequest(BaseModel):
    older_than_days: int = Field(default=30, ge=1, le=3650)


class QueueFamilyResponse(BaseModel):
    queue: JobQueue
    priority: int
    concurrency_limit: int
    timeout_s: float
    max_attempts: int
    description: str
    job_types: list[JobType]


class DispatcherStatusResponse(BaseModel):
    worker_id: str
    running: bool
    active_by_queue: dict[str, int]
    concurrency_limits: dict[str, int]


__all__ = [
    "CleanupRequest",
    "DispatcherStatusResponse",
    "JobActionRequest",
    "JobActionResponse",
    "JobEnqueueRequest",
    "JobEnqueueResponse",
    "JobListResponse",
    "JobResponse",
    "JobStatsResponse",
    "JobStatus",
    "QueueFamilyResponse",
    "QueueStats",
]
