"""
Persisted job record for the delayed job queue.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Index, Integer, SmallInteger, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from jobcore.infra.database import Base, UTCDateTime, utcnow
from jobcore.v1.infra.jobs.catalog import JobQueue, JobType


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED.value, JobStatus.FAILED.value})


class Job(Base):
    """
    A unit of deferred work.

    The queue column is derived from the type when the row is created and
    never changes. Status moves queued -> running -> {succeeded, queued, failed};
    succeeded and failed are terminal.
    """

    __tablename__ = "delayed_jobs"

    # Identity
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(Text, nullable=False, comment="JobType value")
    queue: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Queue family derived from type"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Copied from the queue family, lower is served first",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Opaque handler parameters",
    )

    # State machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.QUEUED.value,
        comment="queued|running|succeeded|failed",
    )
    attempt: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Execution attempts so far"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, comment="Attempts before terminal failure"
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Requested first run time"
    )
    next_attempt_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="Earliest time the job may be leased",
    )

    # Lease
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker id holding the lease"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Outcome
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Tracing and deduplication
    dedupe_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    origin: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Component that enqueued the job"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed')",
            name="delayed_jobs_status_check",
        ),
        CheckConstraint(
            "queue IN ('HIGH', 'DEFAULT', 'LOW', 'BULK', 'SCREENSHOT')",
            name="delayed_jobs_queue_check",
        ),
        CheckConstraint("attempt <= max_attempts", name="delayed_jobs_attempt_check"),
        Index(
            "ix_delayed_jobs_ready",
            "queue",
            "status",
            "priority",
            "next_attempt_at",
        ),
        Index("ix_delayed_jobs_type", "type"),
        Index("ix_delayed_jobs_dedupe_key", "type", "dedupe_key"),
        Index(
            "ix_delayed_jobs_running_heartbeat",
            "heartbeat_at",
            postgresql_where=text("status = 'running'"),
        ),
    )

    @property
    def job_type(self) -> JobType:
        return JobType(self.type)

    @property
    def job_queue(self) -> JobQueue:
        return JobQueue(self.queue)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_active(self) -> bool:
        """Check if job is in an active state (queued, running)."""
        return self.status in (JobStatus.QUEUED.value, JobStatus.RUNNING.value)

    def attempts_exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def is_stuck(self, visibility_timeout_s: int, now: datetime | None = None) -> bool:
        """Check if a running job's lease went stale (worker crashed or hung)."""
        if self.status != JobStatus.RUNNING.value or not self.heartbeat_at:
            return False

        now = now or utcnow()
        return self.heartbeat_at < now - timedelta(seconds=visibility_timeout_s)
