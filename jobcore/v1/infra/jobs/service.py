"""
Job service for enqueueing and managing delayed jobs.
"""

import hashlib
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.config.logging import get_logger
from jobcore.config.settings import Settings
from jobcore.infra.database import utcnow
from jobcore.v1.core.exceptions import ConflictError, NotFoundError, ValidationError
from jobcore.v1.infra.jobs.catalog import QUEUE_FAMILIES, JobType, parse_job_type
from jobcore.v1.infra.jobs.models import Job, JobStatus
from jobcore.v1.infra.jobs.repository import JobRepository
from jobcore.v1.infra.jobs.schemas import (
    JobEnqueueResponse,
    JobStatsResponse,
    QueueStats,
)

logger = get_logger(__name__)


class JobService:
    """Producer entry point plus the admin operations over the job store."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def resolve_max_attempts(
        self, job_type: JobType, override: int | None = None
    ) -> int:
        if override is not None:
            if override < 1:
                raise ValidationError(
                    "max_attempts must be at least 1",
                    details={"max_attempts": override},
                )
            return override
        family = job_type.queue.family
        if family.max_attempts is not None:
            return family.max_attempts
        return self.settings.job_default_max_attempts

    async def enqueue(
        self,
        session: AsyncSession,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        scheduled_at: datetime | None = None,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
        request_id: str | None = None,
        origin: str | None = None,
    ) -> JobEnqueueResponse:
        """
        Persist a new job in QUEUED state.

        Queue and priority are derived from the catalog; the caller never
        picks them. When ``dedupe_key`` is given and an active job of the
        same type already carries it, that job is returned instead.

        Raises:
            UnknownJobTypeError: the type is not in the catalog
        """
        job_type = parse_job_type(job_type)
        family = job_type.queue.family
        repo = JobRepository(session)

        if dedupe_key:
            existing = await repo.find_active_by_dedupe_key(job_type.value, dedupe_key)
            if existing:
                logger.info(
                    "Job deduplicated",
                    job_id=str(existing.id),
                    job_type=job_type.value,
                    dedupe_key=dedupe_key,
                )
                return JobEnqueueResponse(
                    job_id=existing.id,
                    type=job_type,
                    queue=family.name,
                    status=existing.status,
                    deduplicated=True,
                )

        now = utcnow()
        run_at = scheduled_at or now
        job = Job(
            id=uuid4(),
            type=job_type.value,
            queue=family.name.value,
            priority=family.priority,
            payload=payload or {},
            status=JobStatus.QUEUED.value,
            attempt=0,
            max_attempts=self.resolve_max_attempts(job_type, max_attempts),
            scheduled_at=run_at,
            next_attempt_at=run_at,
            dedupe_key=dedupe_key,
            request_id=request_id,
            origin=origin,
            created_at=now,
            updated_at=now,
        )
        await repo.insert(job)
        await session.commit()

        logger.info(
            "Job enqueued",
            job_id=str(job.id),
            job_type=job_type.value,
            queue=family.name.value,
            priority=family.priority,
            max_attempts=job.max_attempts,
            scheduled_at=run_at.isoformat(),
            origin=origin,
        )

        return JobEnqueueResponse(
            job_id=job.id, type=job_type, queue=family.name, status=job.status
        )

    async def get(self, session: AsyncSession, job_id: UUID) -> Job:
        job = await JobRepository(session).get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", details={"job_id": str(job_id)})
        return job

    async def list(
        self,
        session: AsyncSession,
        status: list[JobStatus] | None = None,
        job_type: JobType | None = None,
        queue: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        return await JobRepository(session).list_jobs(
            statuses=[s.value for s in status] if status else None,
            job_type=job_type.value if job_type else None,
            queue=queue,
            limit=limit,
            offset=offset,
        )

    async def stats(self, session: AsyncSession) -> JobStatsResponse:
        """Counts by status, type and queue family."""
        repo = JobRepository(session)
        by_status = await repo.counts_by(Job.status)
        by_type = await repo.counts_by(Job.type)
        by_queue = await repo.counts_by_queue_and_status()

        queues = [
            QueueStats(
                queue=family.name,
                priority=family.priority,
                concurrency_limit=family.concurrency_limit,
                by_status=by_queue.get(family.name.value, {}),
            )
            for family in sorted(QUEUE_FAMILIES.values(), key=lambda f: f.priority)
        ]

        queue_depth = by_status.get(JobStatus.QUEUED.value, 0) + by_status.get(
            JobStatus.RUNNING.value, 0
        )
        failed_last_hour = await repo.count_failed_since(utcnow() - timedelta(hours=1))

        return JobStatsResponse(
            total_jobs=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
            queues=queues,
            queue_depth=queue_depth,
            failed_last_hour=failed_last_hour,
        )

    async def requeue_failed(self, session: AsyncSession, job_id: UUID) -> Job:
        """Put a FAILED job back in the queue with a fresh attempt budget."""
        repo = JobRepository(session)
        job = await self.get(session, job_id)
        if job.status != JobStatus.FAILED.value:
            raise ConflictError(
                f"Only failed jobs can be requeued (job is {job.status})",
                details={"job_id": str(job_id), "status": job.status},
            )

        if not await repo.requeue_failed(job_id, utcnow()):
            raise ConflictError(
                "Job changed state while requeueing", details={"job_id": str(job_id)}
            )

        logger.info("Job requeued", job_id=str(job_id), job_type=job.type)
        return await self.get(session, job_id)

    async def cleanup_terminal(
        self, session: AsyncSession, older_than_days: int = 30
    ) -> int:
        """Delete succeeded and failed jobs last touched before the cutoff."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = await JobRepository(session).delete_terminal_before(cutoff)
        if deleted:
            logger.info(
                "Cleaned up terminal jobs",
                deleted_count=deleted,
                older_than_days=older_than_days,
            )
        return deleted

    def generate_dedupe_key(self, job_type: JobType | str, **params: Any) -> str:
        """Deterministic deduplication key for a job type and its parameters."""
        key_data = f"{JobType(job_type).value}:{sorted(params.items())}"
        return hashlib.sha256(key_data.encode()).hexdigest()[:32]
