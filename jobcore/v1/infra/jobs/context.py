"""
Explicit per-execution context handed to job handlers.

The dispatcher builds one JobContext per lease. It carries the job identity,
a logger already bound with that identity, and the session factory the
handler uses for its own domain writes. Nothing here lives in process-wide
state, so concurrent executions never see each other's context.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.config.logging import get_logger
from jobcore.v1.infra.jobs.catalog import JobQueue, JobType


@dataclass(frozen=True)
class JobContext:
    job_id: UUID
    job_type: JobType
    queue: JobQueue
    attempt: int
    max_attempts: int
    session_factory: async_sessionmaker[AsyncSession]
    worker_id: str = "inline"
    request_id: str | None = None
    origin: str | None = None
    logger: structlog.BoundLogger = field(default=None, compare=False, repr=False)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.logger is None:
            object.__setattr__(self, "logger", self._bind_logger())

    def _bind_logger(self) -> structlog.BoundLogger:
        return get_logger("jobcore.jobs").bind(
            job_id=str(self.job_id),
            job_type=self.job_type.value,
            queue=self.queue.value,
            attempt=self.attempt,
            worker_id=self.worker_id,
            origin=self.origin or self.job_type.value,
            request_id=self.request_id,
        )

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session for handler-side domain writes; commits on clean exit."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
