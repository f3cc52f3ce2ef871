"""
Periodic producers.

Each producer enqueues one catalog job type on a fixed cadence through
JobService, with a deterministic dedupe key so overlapping ticks (or several
worker processes) never stack up duplicate active jobs.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.config.logging import get_logger
from jobcore.config.settings import Settings
from jobcore.infra.database import utcnow
from jobcore.v1.infra.jobs.catalog import JobType
from jobcore.v1.infra.jobs.handlers import UntaggedItemSource
from jobcore.v1.infra.jobs.schemas import JobEnqueueResponse
from jobcore.v1.infra.jobs.service import JobService

logger = get_logger(__name__)


@dataclass(frozen=True)
class Production:
    """What one tick wants enqueued."""

    payload: dict[str, Any]
    dedupe_params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Producer:
    name: str
    job_type: JobType
    interval_s: int
    # Returns None when there is nothing to enqueue this tick
    build: Callable[[datetime], Awaitable[Production | None]]


class JobScheduler:
    """Runs the periodic producers on an asyncio APScheduler."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        item_source: UntaggedItemSource | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.item_source = item_source
        self.clock = clock
        self.service = JobService(settings)
        self.producers = {p.name: p for p in self._default_producers()}
        self._scheduler: AsyncIOScheduler | None = None

    def _default_producers(self) -> list[Producer]:
        producers = [
            Producer(
                name="click_rollup",
                job_type=JobType.CLICK_ROLLUP,
                interval_s=self.settings.click_rollup_interval_s,
                build=self._click_rollup,
            )
        ]
        if self.item_source is not None:
            producers.append(
                Producer(
                    name="ai_tagging",
                    job_type=JobType.AI_TAGGING,
                    interval_s=self.settings.ai_tagging_interval_s,
                    build=self._ai_tagging,
                )
            )
        return producers

    async def _click_rollup(self, now: datetime) -> Production:
        # Yesterday, so late-arriving clicks are still counted
        rollup_date = (now - timedelta(days=1)).date().isoformat()
        return Production(
            payload={"rollup_date": rollup_date},
            dedupe_params={"rollup_date": rollup_date},
        )

    async def _ai_tagging(self, now: datetime) -> Production | None:
        item_ids = await self.item_source.untagged_item_ids(
            self.settings.ai_tagging_max_items
        )
        if not item_ids:
            logger.debug("No untagged items, skipping AI tagging")
            return None
        # Budget checks happen in the handler; one active tagging job at a time
        return Production(
            payload={"item_ids": list(item_ids), "trigger": "scheduled"},
            dedupe_params={"trigger": "scheduled"},
        )

    async def tick(self, name: str) -> JobEnqueueResponse | None:
        """Run one producer now. Returns the enqueue result, or None when idle."""
        producer = self.producers[name]
        now = self.clock()
        production = await producer.build(now)
        if production is None:
            return None

        async with self.session_factory() as session:
            result = await self.service.enqueue(
                session,
                producer.job_type,
                production.payload,
                scheduled_at=now,
                dedupe_key=self.service.generate_dedupe_key(
                    producer.job_type, **production.dedupe_params
                ),
                origin=f"scheduler:{name}",
            )

        logger.info(
            "Scheduled job produced",
            producer=name,
            job_id=str(result.job_id),
            job_type=producer.job_type.value,
            deduplicated=result.deduplicated,
        )
        return result

    async def _safe_tick(self, name: str) -> None:
        try:
            await self.tick(name)
        except Exception:
            # The next interval retries; a failed tick must not stop the schedule
            logger.exception("Scheduled producer failed", producer=name)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register every producer; call from inside the running event loop."""
        if self.running:
            raise RuntimeError("Scheduler is already running")

        self._scheduler = AsyncIOScheduler(timezone=UTC)
        for producer in self.producers.values():
            self._scheduler.add_job(
                func=self._safe_tick,
                args=[producer.name],
                trigger=IntervalTrigger(seconds=producer.interval_s, timezone=UTC),
                id=producer.name,
                name=f"Produce {producer.job_type.value}",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
                next_run_time=datetime.now(UTC),
            )
        self._scheduler.start()
        logger.info(
            "Job scheduler started",
            producers={p.name: p.interval_s for p in self.producers.values()},
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Job scheduler stopped")
