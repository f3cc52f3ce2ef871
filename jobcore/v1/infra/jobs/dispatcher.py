"""
Database-backed job dispatcher with per-family concurrency and heartbeats.
"""

import asyncio
import os
import socket
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.config.logging import get_logger
from jobcore.config.settings import Settings
from jobcore.infra.database import utcnow
from jobcore.v1.core.alerts import Alert, AlertLevel, AlertSink, LoggingAlertSink
from jobcore.v1.core.exceptions import (
    HandlerNotRegisteredError,
    HandlerTimeoutError,
    NonRetryableJobError,
)
from jobcore.v1.core.registries import HandlerRegistry
from jobcore.v1.infra.jobs.catalog import QUEUE_FAMILIES, JobQueue, QueueFamily
from jobcore.v1.infra.jobs.context import JobContext
from jobcore.v1.infra.jobs.models import Job, JobStatus
from jobcore.v1.infra.jobs.repository import JobRepository
from jobcore.v1.infra.jobs.retry import Outcome, RetryDecision, RetryPolicy
from jobcore.v1.infra.jobs.telemetry import JOBS_FAILED, JOBS_RECOVERED, JobSpan

logger = get_logger(__name__)


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def _error_code(error: BaseException, decision: RetryDecision) -> str:
    if isinstance(error, HandlerNotRegisteredError):
        return "HANDLER_NOT_REGISTERED"
    if isinstance(error, NonRetryableJobError):
        return "NON_RETRYABLE"
    if decision.outcome is Outcome.FAILED:
        return "MAX_ATTEMPTS_EXCEEDED"
    if isinstance(error, HandlerTimeoutError):
        return "HANDLER_TIMEOUT"
    return "RETRY_SCHEDULED"


class JobDispatcher:
    """
    Leases due jobs and runs them through their registered handlers.

    Features:
    - One polling loop per queue family, served in priority order
    - Per-family concurrency ceiling enforced against this process's slots
      and the number of RUNNING rows in the store, counted and leased under a
      per-family advisory lock on PostgreSQL
    - Compare-and-swap leasing so a job is held by at most one worker
    - Per-family handler timeout, retry/backoff and terminal failure alerts
    - Heartbeats for held leases and recovery of leases gone stale
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        registry: HandlerRegistry,
        retry_policy: RetryPolicy | None = None,
        alert_sink: AlertSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        worker_id: str | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.clock = clock
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False
        self._stop_event = asyncio.Event()
        self._active: dict[JobQueue, dict[UUID, asyncio.Task]] = {
            queue: {} for queue in JobQueue
        }

    @property
    def families(self) -> list[QueueFamily]:
        return sorted(QUEUE_FAMILIES.values(), key=lambda family: family.priority)

    def active_count(self, queue: JobQueue | None = None) -> int:
        if queue is not None:
            return len(self._active[queue])
        return sum(len(tasks) for tasks in self._active.values())

    def active_job_ids(self) -> list[UUID]:
        return [job_id for tasks in self._active.values() for job_id in tasks]

    # Lifecycle

    async def start(self) -> None:
        """Run the family loops, heartbeats and recovery until stop() is called."""
        if self.running:
            raise RuntimeError("Dispatcher is already running")

        self.running = True
        self._stop_event.clear()
        logger.info(
            "Starting job dispatcher",
            worker_id=self.worker_id,
            families={f.name.value: f.concurrency_limit for f in self.families},
            poll_interval_ms=self.settings.job_poll_interval_ms,
        )

        try:
            await asyncio.gather(
                *(self._family_loop(family.name) for family in self.families),
                self._heartbeat_loop(),
                self._recovery_loop(),
            )
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop polling and give in-flight jobs the grace period to finish."""
        logger.info("Stopping job dispatcher", worker_id=self.worker_id)
        self.running = False
        self._stop_event.set()

        tasks = [task for tasks in self._active.values() for task in tasks.values()]
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=self.settings.job_shutdown_grace_s)
        if pending:
            # Leases of cancelled jobs are picked up again by stale recovery
            logger.warning(
                "Dispatcher stopped with active jobs",
                worker_id=self.worker_id,
                active_jobs=len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "active_by_queue": {
                queue.value: len(tasks) for queue, tasks in self._active.items()
            },
            "concurrency_limits": {
                family.name.value: family.concurrency_limit for family in self.families
            },
        }

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _family_loop(self, queue: JobQueue) -> None:
        poll_interval = self.settings.job_poll_interval_ms / 1000
        while self.running:
            try:
                spawned = await self.dispatch(queue)
                if not spawned:
                    await self._idle(poll_interval)
            except Exception:
                logger.exception(
                    "Error in dispatch loop", worker_id=self.worker_id, queue=queue.value
                )
                await self._idle(poll_interval * 5)

    # Leasing

    async def free_slots(self, queue: JobQueue, session: AsyncSession) -> int:
        """Slots available to this family, bounded locally and by the store."""
        limit = queue.family.concurrency_limit
        local_free = limit - len(self._active[queue])
        if local_free <= 0:
            return 0
        running = await JobRepository(session).count_running(queue)
        return max(0, min(local_free, limit - running))

    async def claim(self, queue: JobQueue) -> list[Job]:
        """Lease as many due jobs of one family as there are free slots."""
        async with self.session_factory() as session:
            # Held until the leases commit; rollback on an early return releases it
            await JobRepository(session).lock_family(queue)
            slots = await self.free_slots(queue, session)
            if slots == 0:
                return []
            jobs = await JobRepository(session).claim(
                queue, slots, self.worker_id, self.clock()
            )

        if jobs:
            logger.info(
                "Claimed jobs",
                worker_id=self.worker_id,
                queue=queue.value,
                job_count=len(jobs),
                job_ids=[str(job.id) for job in jobs],
            )
        return jobs

    async def dispatch(self, queue: JobQueue) -> list[asyncio.Task]:
        """Claim and start jobs of one family without waiting for them."""
        tasks = []
        for job in await self.claim(queue):
            task = asyncio.create_task(self._execute(job, queue), name=f"job-{job.id}")
            self._active[queue][job.id] = task
            tasks.append(task)
        return tasks

    async def run_once(self, queue: JobQueue | None = None) -> int:
        """Claim once (one family, or every family by priority) and run to completion."""
        queues = [queue] if queue is not None else [f.name for f in self.families]
        tasks: list[asyncio.Task] = []
        for name in queues:
            tasks.extend(await self.dispatch(name))
        if tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    # Execution

    def _context_for(self, job: Job) -> JobContext:
        return JobContext(
            job_id=job.id,
            job_type=job.job_type,
            queue=job.job_queue,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            session_factory=self.session_factory,
            worker_id=self.worker_id,
            request_id=job.request_id,
            origin=job.origin,
        )

    async def _invoke(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any] | None:
        handler = self.registry.handler_for(ctx.job_type)
        timeout_s = ctx.queue.family.timeout_s
        try:
            return await asyncio.wait_for(handler.execute(ctx, payload), timeout=timeout_s)
        except asyncio.TimeoutError:
            raise HandlerTimeoutError(timeout_s) from None

    async def _execute(self, job: Job, queue: JobQueue) -> None:
        try:
            try:
                ctx = self._context_for(job)
            except ValueError:
                await self._reject_unknown_type(job)
                return
            await self._run(ctx, dict(job.payload or {}))
        except Exception:
            # Store unreachable: the lease stays RUNNING and stale recovery reclaims it
            logger.exception(
                "Failed to record job outcome", job_id=str(job.id), job_type=job.type
            )
        finally:
            self._active[queue].pop(job.id, None)

    async def _run(self, ctx: JobContext, payload: dict[str, Any]) -> None:
        try:
            with JobSpan(ctx) as span:
                error: Exception | None = None
                result: dict[str, Any] | None = None
                try:
                    result = await self._invoke(ctx, payload)
                except Exception as exc:
                    error = exc
                    ctx.logger.warning(
                        "Job attempt failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                        exc_info=not isinstance(exc, (NonRetryableJobError, HandlerTimeoutError)),
                    )

                decision = self.retry_policy.decide(
                    ctx.attempt, ctx.max_attempts, error, self.clock()
                )
                span.set_attribute("job.outcome", decision.outcome.value)
                if decision.delay_s is not None:
                    span.set_attribute("retry_delay_s", round(decision.delay_s, 3))
                span.finish(decision.outcome, error)
        except asyncio.CancelledError:
            ctx.logger.info("Job execution cancelled")
            raise

        await self._record(ctx, decision, result, error)

    async def _reject_unknown_type(self, job: Job) -> None:
        """A leased row whose type left the catalog fails at once and is escalated."""
        error = _describe(HandlerNotRegisteredError(f"Unknown job type {job.type!r}"))
        logger.error(
            "Leased job has unknown type",
            job_id=str(job.id),
            job_type=job.type,
            queue=job.queue,
            worker_id=self.worker_id,
        )
        async with self.session_factory() as session:
            held = await JobRepository(session).mark_failed(
                job.id, self.worker_id, self.clock(), error, "HANDLER_NOT_REGISTERED"
            )
        if held:
            JOBS_FAILED.labels(job.queue, job.type, Outcome.FAILED.value).inc()
            await self._escalate(
                job.id, job.type, job.queue, job.attempt, error, "HANDLER_NOT_REGISTERED"
            )

    async def _record(
        self,
        ctx: JobContext,
        decision: RetryDecision,
        result: dict[str, Any] | None,
        error: Exception | None,
    ) -> None:
        now = self.clock()
        async with self.session_factory() as session:
            repo = JobRepository(session)
            if decision.outcome is Outcome.SUCCEEDED:
                held = await repo.mark_succeeded(ctx.job_id, self.worker_id, now, result)
            elif decision.outcome is Outcome.RETRY:
                held = await repo.schedule_retry(
                    ctx.job_id,
                    self.worker_id,
                    now,
                    decision.next_attempt_at,
                    _describe(error),
                    _error_code(error, decision),
                )
            else:
                held = await repo.mark_failed(
                    ctx.job_id,
                    self.worker_id,
                    now,
                    _describe(error),
                    _error_code(error, decision),
                )

        if not held:
            ctx.logger.warning(
                "Lease lost before outcome was recorded", outcome=decision.outcome.value
            )
            return

        if decision.outcome is Outcome.SUCCEEDED:
            ctx.logger.info("Job succeeded")
        elif decision.outcome is Outcome.RETRY:
            ctx.logger.info(
                "Job scheduled for retry",
                next_attempt_at=decision.next_attempt_at.isoformat(),
                delay_s=round(decision.delay_s or 0, 3),
            )
        else:
            ctx.logger.error("Job failed terminally", error=_describe(error))
            await self._escalate(
                ctx.job_id,
                ctx.job_type.value,
                ctx.queue.value,
                ctx.attempt,
                _describe(error),
                _error_code(error, decision),
            )

    async def _escalate(
        self,
        job_id: UUID,
        job_type: str,
        queue: str,
        attempt: int,
        error: str,
        error_code: str,
    ) -> None:
        await self.alert_sink.emit(
            Alert(
                kind="job.failed",
                level=AlertLevel.CRITICAL,
                message=f"Job {job_type} failed after {attempt} attempt(s)",
                details={
                    "job_id": str(job_id),
                    "job_type": job_type,
                    "queue": queue,
                    "attempt": attempt,
                    "error": error,
                    "error_code": error_code,
                },
            )
        )

    # Lease maintenance

    async def heartbeat(self) -> int:
        """Refresh heartbeat_at on every lease this process holds."""
        job_ids = self.active_job_ids()
        if not job_ids:
            return 0
        async with self.session_factory() as session:
            return await JobRepository(session).heartbeat(
                job_ids, self.worker_id, self.clock()
            )

    async def recover_stale(self, limit: int = 100) -> list[tuple[UUID, JobStatus]]:
        """Release leases whose heartbeat is older than the visibility timeout."""
        timeout_s = self.settings.job_visibility_timeout_s
        now = self.clock()
        cutoff = now - timedelta(seconds=timeout_s)
        error = f"Lease expired: no heartbeat for {timeout_s}s"

        recovered: list[tuple[UUID, JobStatus]] = []
        async with self.session_factory() as session:
            repo = JobRepository(session)
            for job in await repo.find_stale(cutoff, limit):
                holder = job.locked_by
                new_status = await repo.release_stale(job, cutoff, now, error)
                if new_status is None:
                    continue
                recovered.append((job.id, new_status))
                JOBS_RECOVERED.labels(job.queue).inc()
                logger.warning(
                    "Recovered stale job",
                    job_id=str(job.id),
                    job_type=job.type,
                    previous_holder=holder,
                    attempt=job.attempt,
                    new_status=new_status.value,
                )
                if new_status is JobStatus.FAILED:
                    await self._escalate(
                        job.id, job.type, job.queue, job.attempt, error, "WORKER_TIMEOUT"
                    )

        if recovered:
            logger.warning(
                "Recovered stale jobs",
                stale_job_count=len(recovered),
                timeout_seconds=timeout_s,
            )
        return recovered

    async def _heartbeat_loop(self) -> None:
        interval = self.settings.job_heartbeat_interval_s
        while self.running:
            try:
                await self.heartbeat()
                await self._idle(interval)
            except Exception:
                logger.exception("Error updating heartbeats", worker_id=self.worker_id)
                await self._idle(interval * 2)

    async def _recovery_loop(self) -> None:
        interval = self.settings.job_recovery_interval_s
        while self.running:
            try:
                await self.recover_stale()
                await self._idle(interval)
            except Exception:
                logger.exception("Error in stale job recovery")
                await self._idle(interval)
