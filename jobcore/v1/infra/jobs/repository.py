"""
Job record store.

All status transitions are conditional UPDATEs whose row count tells the
caller whether it won. Leasing selects candidates with
``FOR UPDATE SKIP LOCKED`` (PostgreSQL) and then flips each one from queued
to running with a compare-and-swap, so two workers can never both hold the
same job even on databases without row locks.
"""

import zlib
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.v1.infra.jobs.catalog import JobQueue
from jobcore.v1.infra.jobs.models import TERMINAL_STATUSES, Job, JobStatus

_LOCK_CLEARED = {"locked_at": None, "locked_by": None, "heartbeat_at": None}


def family_lock_key(queue: JobQueue) -> int:
    """Advisory lock id for one family, identical in every process."""
    return zlib.crc32(f"jobcore.family.{queue.value}".encode())


def family_lock_statement(queue: JobQueue):
    return select(func.pg_advisory_xact_lock(family_lock_key(queue)))


class JobRepository:
    """Queries and state transitions for delayed jobs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Producers

    async def insert(self, job: Job) -> Job:
        self.session.add(job)
        await self.session.flush()
        return job

    async def find_active_by_dedupe_key(self, job_type: str, dedupe_key: str) -> Job | None:
        """Active (queued or running) job of a type with the same dedupe key."""
        result = await self.session.execute(
            select(Job)
            .where(
                Job.type == job_type,
                Job.dedupe_key == dedupe_key,
                Job.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
            )
            .order_by(Job.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get(self, job_id: UUID) -> Job | None:
        result = await self.session.execute(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # Leasing

    async def lock_family(self, queue: JobQueue) -> None:
        """Hold the family lock until this transaction ends (PostgreSQL only).

        Serializes the RUNNING count and the leases that follow it, so
        dispatchers sharing a store cannot both see the same headroom.
        SQLite already allows a single writer at a time.
        """
        if self.session.get_bind().dialect.name != "postgresql":
            return
        await self.session.execute(family_lock_statement(queue))

    async def count_running(self, queue: JobQueue) -> int:
        result = await self.session.execute(
            select(func.count(Job.id)).where(
                Job.queue == queue.value, Job.status == JobStatus.RUNNING.value
            )
        )
        return result.scalar() or 0

    async def candidate_ids(
        self, queue: JobQueue, limit: int, now: datetime
    ) -> list[UUID]:
        """Eligible jobs of a family in (priority, next_attempt_at) order."""
        if limit <= 0:
            return []

        result = await self.session.execute(
            select(Job.id)
            .where(
                Job.queue == queue.value,
                Job.status == JobStatus.QUEUED.value,
                Job.next_attempt_at <= now,
                Job.attempt < Job.max_attempts,
            )
            .order_by(Job.priority, Job.next_attempt_at, Job.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def try_lease(self, job_id: UUID, worker_id: str, now: datetime) -> bool:
        """Compare-and-swap queued -> running; True only for the single winner."""
        result = await self.session.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.QUEUED.value,
                Job.next_attempt_at <= now,
                Job.attempt < Job.max_attempts,
            )
            .values(
                status=JobStatus.RUNNING.value,
                attempt=Job.attempt + 1,
                locked_at=now,
                locked_by=worker_id,
                heartbeat_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim(
        self, queue: JobQueue, limit: int, worker_id: str, now: datetime
    ) -> list[Job]:
        """Lease up to ``limit`` eligible jobs of one family and commit."""
        leased: list[UUID] = []
        for job_id in await self.candidate_ids(queue, limit, now):
            if await self.try_lease(job_id, worker_id, now):
                leased.append(job_id)
        await self.session.commit()

        if not leased:
            return []

        result = await self.session.execute(
            select(Job)
            .where(Job.id.in_(leased), Job.locked_by == worker_id)
            .order_by(Job.priority, Job.next_attempt_at, Job.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def heartbeat(
        self, job_ids: Sequence[UUID], worker_id: str, now: datetime
    ) -> int:
        if not job_ids:
            return 0
        result = await self.session.execute(
            update(Job)
            .where(
                Job.id.in_(list(job_ids)),
                Job.locked_by == worker_id,
                Job.status == JobStatus.RUNNING.value,
            )
            .values(heartbeat_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount

    # Outcomes (only the lease holder may write them)

    def _held_by(self, job_id: UUID, worker_id: str):
        return and_(
            Job.id == job_id,
            Job.status == JobStatus.RUNNING.value,
            Job.locked_by == worker_id,
        )

    async def mark_succeeded(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        result: dict[str, Any] | None = None,
    ) -> bool:
        outcome = await self.session.execute(
            update(Job)
            .where(self._held_by(job_id, worker_id))
            .values(
                status=JobStatus.SUCCEEDED.value,
                result=result,
                last_error=None,
                error_code=None,
                completed_at=now,
                updated_at=now,
                **_LOCK_CLEARED,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return outcome.rowcount == 1

    async def schedule_retry(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        next_attempt_at: datetime,
        error: str,
        error_code: str = "RETRY_SCHEDULED",
    ) -> bool:
        outcome = await self.session.execute(
            update(Job)
            .where(self._held_by(job_id, worker_id))
            .values(
                status=JobStatus.QUEUED.value,
                next_attempt_at=next_attempt_at,
                last_error=error,
                error_code=error_code,
                updated_at=now,
                **_LOCK_CLEARED,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return outcome.rowcount == 1

    async def mark_failed(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        error: str,
        error_code: str = "PROCESSING_ERROR",
    ) -> bool:
        outcome = await self.session.execute(
            update(Job)
            .where(self._held_by(job_id, worker_id))
            .values(
                status=JobStatus.FAILED.value,
                last_error=error,
                error_code=error_code,
                failed_at=now,
                updated_at=now,
                **_LOCK_CLEARED,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return outcome.rowcount == 1

    # Stale lease recovery

    async def find_stale(self, cutoff: datetime, limit: int = 100) -> list[Job]:
        result = await self.session.execute(
            select(Job)
            .where(
                Job.status == JobStatus.RUNNING.value,
                Job.heartbeat_at < cutoff,
            )
            .order_by(Job.heartbeat_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def release_stale(
        self, job: Job, cutoff: datetime, now: datetime, error: str
    ) -> JobStatus | None:
        """Return an abandoned lease to the queue, or fail it if attempts are spent."""
        exhausted = job.attempt >= job.max_attempts
        new_status = JobStatus.FAILED if exhausted else JobStatus.QUEUED
        values: dict[str, Any] = {
            "status": new_status.value,
            "last_error": error,
            "error_code": "WORKER_TIMEOUT",
            "updated_at": now,
            **_LOCK_CLEARED,
        }
        if exhausted:
            values["failed_at"] = now
        else:
            values["next_attempt_at"] = now

        result = await self.session.execute(
            update(Job)
            .where(
                Job.id == job.id,
                Job.status == JobStatus.RUNNING.value,
                Job.locked_by == job.locked_by,
                Job.heartbeat_at < cutoff,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return new_status if result.rowcount == 1 else None

    # Admin

    async def requeue_failed(self, job_id: UUID, now: datetime) -> bool:
        """Give a terminally failed job a fresh set of attempts."""
        result = await self.session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.FAILED.value)
            .values(
                status=JobStatus.QUEUED.value,
                attempt=0,
                next_attempt_at=now,
                failed_at=None,
                error_code="MANUAL_REQUEUE",
                updated_at=now,
                **_LOCK_CLEARED,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def list_jobs(
        self,
        statuses: Sequence[str] | None = None,
        job_type: str | None = None,
        queue: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        query = select(Job)
        if statuses:
            query = query.where(Job.status.in_(list(statuses)))
        if job_type:
            query = query.where(Job.type == job_type)
        if queue:
            query = query.where(Job.queue == queue)

        total_result = await self.session.execute(
            select(func.count()).select_from(query.subquery())
        )
        total = total_result.scalar() or 0

        jobs_result = await self.session.execute(
            query.order_by(desc(Job.created_at)).offset(offset).limit(limit)
        )
        return list(jobs_result.scalars().all()), total

    async def counts_by(self, column) -> dict[str, int]:
        result = await self.session.execute(
            select(column, func.count(Job.id)).group_by(column)
        )
        return {key: count for key, count in result.all()}

    async def counts_by_queue_and_status(self) -> dict[str, dict[str, int]]:
        result = await self.session.execute(
            select(Job.queue, Job.status, func.count(Job.id)).group_by(
                Job.queue, Job.status
            )
        )
        counts: dict[str, dict[str, int]] = {}
        for queue, status, count in result.all():
            counts.setdefault(queue, {})[status] = count
        return counts

    async def count_failed_since(self, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.FAILED.value, Job.updated_at >= since
            )
        )
        return result.scalar() or 0

    async def count_stale(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.RUNNING.value, Job.heartbeat_at < cutoff
            )
        )
        return result.scalar() or 0

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(Job)
            .where(Job.status.in_(list(TERMINAL_STATUSES)), Job.updated_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount
