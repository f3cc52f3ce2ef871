"""
Job management API endpoints.

Provides admin endpoints for job enqueueing, monitoring, and management.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.config.logging import get_logger
from jobcore.config.settings import Settings, SettingsDep
from jobcore.infra.database import get_session
from jobcore.v1.core.exceptions import JobCoreException, create_success_response
from jobcore.v1.core.runtime import DispatcherDep
from jobcore.v1.infra.jobs.catalog import QUEUE_FAMILIES, JobQueue, JobType, types_in
from jobcore.v1.infra.jobs.dispatcher import JobDispatcher
from jobcore.v1.infra.jobs.models import JobStatus
from jobcore.v1.infra.jobs.schemas import (
    CleanupRequest,
    JobActionRequest,
    JobActionResponse,
    JobEnqueueRequest,
    JobListResponse,
    JobResponse,
    QueueFamilyResponse,
)
from jobcore.v1.infra.jobs.service import JobService

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Enqueue a new delayed job."""

    result = await JobService(settings).enqueue(
        session,
        job_request.type,
        job_request.payload,
        scheduled_at=job_request.scheduled_at,
        max_attempts=job_request.max_attempts,
        dedupe_key=job_request.dedupe_key,
        request_id=getattr(request.state, "request_id", None),
        origin="admin_api",
    )

    logger.info(
        "Job enqueued via API",
        job_id=str(result.job_id),
        job_type=job_request.type.value,
        deduplicated=result.deduplicated,
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: JobType | None = Query(default=None, description="Filter by job type"),
    queue: JobQueue | None = Query(default=None, description="Filter by queue family"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination, newest first."""

    jobs, total = await JobService(settings).list(
        session,
        status=status,
        job_type=type,
        queue=queue.value if queue else None,
        limit=limit,
        offset=offset,
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/queues", response_model=dict)
async def list_queue_families(settings: Settings = SettingsDep) -> dict[str, Any]:
    """Static queue family catalog with the job types assigned to each."""

    families = [
        QueueFamilyResponse(
            queue=family.name,
            priority=family.priority,
            concurrency_limit=family.concurrency_limit,
            timeout_s=family.timeout_s,
            max_attempts=family.max_attempts or settings.job_default_max_attempts,
            description=family.description,
            job_types=types_in(family.name),
        )
        for family in sorted(QUEUE_FAMILIES.values(), key=lambda f: f.priority)
    ]
    return create_success_response(data=[f.model_dump(mode="json") for f in families])


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job statistics by status, type and queue family."""

    stats = await JobService(settings).stats(session)
    return create_success_response(data=stats.model_dump(mode="json"))


@router.get("/dispatcher", response_model=dict)
async def get_dispatcher_status(
    dispatcher: JobDispatcher | None = DispatcherDep,
) -> dict[str, Any]:
    """In-process dispatcher status; null when the API runs without one."""

    return create_success_response(data=dispatcher.status() if dispatcher else None)


@router.post("/cleanup", response_model=dict)
async def cleanup_jobs(
    request: CleanupRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Delete terminal jobs older than the retention window."""

    deleted = await JobService(settings).cleanup_terminal(
        session, request.older_than_days
    )
    return create_success_response(
        data={"deleted_count": deleted, "older_than_days": request.older_than_days}
    )


@router.post("/batch/retry", response_model=dict)
async def retry_jobs_batch(
    request: JobActionRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Requeue multiple failed jobs."""

    job_service = JobService(settings)
    success_ids = []
    failed_ids = []
    errors = {}

    for job_id in request.job_ids:
        try:
            await job_service.requeue_failed(session, job_id)
            success_ids.append(job_id)
        except JobCoreException as e:
            failed_ids.append(job_id)
            errors[str(job_id)] = e.message

    logger.info(
        "Batch job retry via API",
        success_count=len(success_ids),
        failed_count=len(failed_ids),
    )

    response = JobActionResponse(
        success_ids=success_ids, failed_ids=failed_ids, errors=errors
    )
    return create_success_response(data=response.model_dump(mode="json"))


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = await JobService(settings).get(session, job_id)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Requeue a failed job with a fresh attempt budget."""

    job = await JobService(settings).requeue_failed(session, job_id)
    logger.info("Job retried via API", job_id=str(job_id))

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )
