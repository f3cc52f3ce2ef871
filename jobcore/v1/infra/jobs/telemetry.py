"""
Dispatch telemetry: Prometheus counters and per-execution span events.
"""

import time
from typing import Any

from prometheus_client import Counter, Gauge, Histogram

from jobcore.v1.infra.jobs.context import JobContext
from jobcore.v1.infra.jobs.retry import Outcome

JOBS_DISPATCHED = Counter(
    "jobcore_jobs_dispatched_total",
    "Jobs leased and handed to a handler",
    ["queue", "type"],
)
JOBS_SUCCEEDED = Counter(
    "jobcore_jobs_succeeded_total",
    "Job attempts that completed without error",
    ["queue", "type"],
)
JOBS_FAILED = Counter(
    "jobcore_jobs_failed_total",
    "Job attempts that raised, by resulting transition",
    ["queue", "type", "outcome"],
)
JOB_DURATION = Histogram(
    "jobcore_job_duration_seconds",
    "Handler execution time",
    ["queue", "type"],
    buckets=(0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300, 900, 1800),
)
JOBS_RUNNING = Gauge(
    "jobcore_jobs_running",
    "Jobs currently executing in this process",
    ["queue"],
)
JOBS_RECOVERED = Counter(
    "jobcore_jobs_recovered_total",
    "Stale leases returned to the queue or failed by the recovery sweep",
    ["queue"],
)
BUDGET_THROTTLES = Counter(
    "jobcore_budget_throttles_total",
    "Batches skipped or cut short by the budget governor",
    ["provider", "action"],
)
BUDGET_PERCENT_USED = Gauge(
    "jobcore_budget_percent_used",
    "Percent of the monthly budget consumed at last read",
    ["provider"],
)


class JobSpan:
    """Start/finish event pair around one handler invocation."""

    name = "job.execute"

    def __init__(self, ctx: JobContext):
        self.ctx = ctx
        self.attributes: dict[str, Any] = {
            "job.id": str(ctx.job_id),
            "job.type": ctx.job_type.value,
            "job.queue": ctx.queue.value,
            "job.attempt": ctx.attempt,
        }
        self._started = 0.0
        self.duration_s: float | None = None

    def __enter__(self) -> "JobSpan":
        self._started = time.perf_counter()
        JOBS_DISPATCHED.labels(self.ctx.queue.value, self.ctx.job_type.value).inc()
        JOBS_RUNNING.labels(self.ctx.queue.value).inc()
        self.ctx.logger.info("span.start", span=self.name)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        JOBS_RUNNING.labels(self.ctx.queue.value).dec()
        if self.duration_s is None:
            self.duration_s = time.perf_counter() - self._started

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    def finish(self, outcome: Outcome, error: BaseException | None = None) -> None:
        """Record the attempt's outcome once the retry machine has decided it."""
        self.duration_s = time.perf_counter() - self._started
        queue, job_type = self.ctx.queue.value, self.ctx.job_type.value

        JOB_DURATION.labels(queue, job_type).observe(self.duration_s)
        if outcome is Outcome.SUCCEEDED:
            JOBS_SUCCEEDED.labels(queue, job_type).inc()
        else:
            JOBS_FAILED.labels(queue, job_type, outcome.value).inc()

        event: dict[str, Any] = {
            "span": self.name,
            "outcome": outcome.value,
            "duration_ms": round(self.duration_s * 1000, 2),
            **{k: v for k, v in self.attributes.items() if not k.startswith("job.")},
        }
        if error is not None:
            event["error_type"] = type(error).__name__
            event["error"] = str(error)
            self.ctx.logger.warning("span.end", **event)
        else:
            self.ctx.logger.info("span.end", **event)
