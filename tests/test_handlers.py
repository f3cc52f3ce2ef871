from datetime import date, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from jobcore.infra.database import utcnow
from jobcore.v1.analytics.models import ClickStatsDaily, LinkClick
from jobcore.v1.budget.governor import BudgetGovernor
from jobcore.v1.core.exceptions import NonRetryableJobError, RetryableJobError
from jobcore.v1.infra.jobs.catalog import JobType
from jobcore.v1.infra.jobs.context import JobContext
from jobcore.v1.infra.jobs.handlers import (
    AiTaggingHandler,
    BatchResult,
    ClickRollupHandler,
    TaggingUsage,
    run_batch,
)

ROLLUP_DATE = date(2026, 3, 14)


class FakeTaggingBackend:
    def __init__(self, usage: TaggingUsage | None = None, failing: set[str] | None = None):
        self.usage = usage or TaggingUsage("claude-sonnet-4", 1000, 200)
        self.failing = failing or set()
        self.tagged: list[str] = []

    async def tag(self, item_id: str) -> TaggingUsage:
        if item_id in self.failing:
            raise RuntimeError(f"model refused {item_id}")
        self.tagged.append(item_id)
        return self.usage


@pytest.fixture
def governor(test_settings, session_factory, alerts, clock) -> BudgetGovernor:
    return BudgetGovernor(test_settings, session_factory, alerts, clock)


@pytest.fixture
def make_ctx(session_factory):
    def _make(job_type: JobType) -> JobContext:
        return JobContext(
            job_id=uuid4(),
            job_type=job_type,
            queue=job_type.queue,
            attempt=1,
            max_attempts=3,
            session_factory=session_factory,
        )

    return _make


async def set_spend(governor: BudgetGovernor, spent: int, limit: int = 50000) -> None:
    await governor.set_limit(limit)
    await governor.record_usage(spent)


def items(count: int) -> list[str]:
    return [f"item-{n}" for n in range(count)]


async def test_run_batch_isolates_item_failures():
    async def process(item: int) -> None:
        if item % 2:
            raise ValueError(f"odd {item}")

    result = await run_batch(range(5), process)

    assert (result.processed, result.failed, result.attempted) == (3, 2, 5)
    assert result.errors == {"1": "ValueError: odd 1", "3": "ValueError: odd 3"}
    assert BatchResult(1, 0).merge(result).processed == 4


async def test_tagging_at_normal_budget_processes_everything(governor, make_ctx):
    """50% spent: all five items are tagged in one normal-sized batch."""
    await set_spend(governor, 25000)
    backend = FakeTaggingBackend()
    handler = AiTaggingHandler(governor, backend)

    result = await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": items(5)})

    assert result["status"] == "completed"
    assert result["action"] == "NORMAL"
    assert result["processed"] == 5
    assert result["deferred"] == 0
    assert result["batch_sizes"] == [5]
    assert backend.tagged == items(5)


async def test_tagging_at_reduced_budget_uses_smaller_batches(governor, make_ctx, test_settings):
    """80% spent: work proceeds in REDUCE-sized batches."""
    await set_spend(governor, 40000)
    handler = AiTaggingHandler(governor, FakeTaggingBackend())

    result = await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": items(25)})

    assert result["action"] == "REDUCE"
    assert result["processed"] == 25
    assert result["batch_sizes"] == [10, 10, 5]
    assert max(result["batch_sizes"]) < test_settings.budget_normal_batch_size


async def test_tagging_is_skipped_when_budget_is_queued(governor, make_ctx):
    """95% spent: nothing is processed and every item stays pending."""
    await set_spend(governor, 47500)
    backend = FakeTaggingBackend()
    handler = AiTaggingHandler(governor, backend)

    result = await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": items(10)})

    assert result == {
        "status": "skipped",
        "action": "QUEUE",
        "processed": 0,
        "failed": 0,
        "deferred": 10,
    }
    assert backend.tagged == []
    assert (await governor.get_period()).spent_cents == 47500


async def test_tagging_records_usage_per_item(governor, make_ctx):
    await set_spend(governor, 0)
    handler = AiTaggingHandler(governor, FakeTaggingBackend())

    await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": items(3)})

    period = await governor.get_period()
    assert period.spent_cents == 3
    assert period.tokens_input == 3000
    assert period.tokens_output == 600


async def test_tagging_stops_when_budget_worsens_mid_run(governor, make_ctx):
    # 74.8% before the run; each item costs 30 cents
    await set_spend(governor, 37400)
    backend = FakeTaggingBackend(TaggingUsage("claude-sonnet-4", 100_000, 0))
    handler = AiTaggingHandler(governor, backend)

    result = await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": items(30)})

    assert result["status"] == "partial"
    assert result["action"] == "REDUCE"
    assert result["batch_sizes"] == [20]
    assert result["processed"] == 20
    assert result["deferred"] == 10
    assert len(backend.tagged) == 20


async def test_tagging_counts_item_failures(governor, make_ctx):
    await set_spend(governor, 0)
    handler = AiTaggingHandler(governor, FakeTaggingBackend(failing={"item-2"}))

    result = await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": items(5)})

    assert result["status"] == "completed"
    assert result["processed"] == 4
    assert result["failed"] == 1
    assert "item-2" in result["errors"]


async def test_tagging_retries_when_every_item_fails(governor, make_ctx):
    await set_spend(governor, 0)
    handler = AiTaggingHandler(governor, FakeTaggingBackend(failing=set(items(3))))

    with pytest.raises(RetryableJobError, match="All 3 items failed"):
        await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": items(3)})


async def test_tagging_rejects_malformed_payload(governor, make_ctx):
    handler = AiTaggingHandler(governor, FakeTaggingBackend())

    with pytest.raises(NonRetryableJobError):
        await handler.execute(make_ctx(JobType.AI_TAGGING), {"item_ids": "item-1"})


async def add_clicks(session_factory, rows):
    async with session_factory() as session:
        for click_date, click_type, category, user, session_id in rows:
            session.add(
                LinkClick(
                    click_date=click_date,
                    click_timestamp=utcnow(),
                    click_type=click_type,
                    category_id=category,
                    user_id=user,
                    session_id=session_id,
                )
            )
        await session.commit()


async def load_stats(session_factory, stat_date: date) -> dict[str, ClickStatsDaily]:
    async with session_factory() as session:
        result = await session.execute(
            select(ClickStatsDaily).where(ClickStatsDaily.stat_date == stat_date)
        )
        return {row.click_type: row for row in result.scalars().all()}


async def test_click_rollup_aggregates_one_day(session_factory, make_ctx):
    category = uuid4()
    alice, bob = uuid4(), uuid4()
    await add_clicks(
        session_factory,
        [
            (ROLLUP_DATE, "listing", category, alice, "s1"),
            (ROLLUP_DATE, "listing", category, alice, "s2"),
            (ROLLUP_DATE, "listing", category, bob, "s2"),
            (ROLLUP_DATE, "banner", None, None, "s3"),
            (ROLLUP_DATE + timedelta(days=1), "listing", category, bob, "s4"),
        ],
    )

    result = await ClickRollupHandler().execute(
        make_ctx(JobType.CLICK_ROLLUP), {"rollup_date": ROLLUP_DATE.isoformat()}
    )

    assert result == {
        "status": "completed",
        "stat_date": "2026-03-14",
        "groups": 2,
        "total_clicks": 4,
    }
    stats = await load_stats(session_factory, ROLLUP_DATE)
    assert stats["listing"].total_clicks == 3
    assert stats["listing"].unique_users == 2
    assert stats["listing"].unique_sessions == 2
    assert stats["listing"].category_id == category
    assert stats["banner"].total_clicks == 1
    assert stats["banner"].unique_users == 0


async def test_click_rollup_is_idempotent(session_factory, make_ctx):
    await add_clicks(session_factory, [(ROLLUP_DATE, "listing", None, uuid4(), "s1")])
    handler = ClickRollupHandler()
    payload = {"rollup_date": ROLLUP_DATE.isoformat()}

    await handler.execute(make_ctx(JobType.CLICK_ROLLUP), payload)
    await handler.execute(make_ctx(JobType.CLICK_ROLLUP), payload)
    stats = await load_stats(session_factory, ROLLUP_DATE)
    assert len(stats) == 1
    assert stats["listing"].total_clicks == 1

    # Late clicks are picked up by a re-run
    await add_clicks(session_factory, [(ROLLUP_DATE, "listing", None, uuid4(), "s9")])
    await handler.execute(make_ctx(JobType.CLICK_ROLLUP), payload)
    assert (await load_stats(session_factory, ROLLUP_DATE))["listing"].total_clicks == 2


async def test_click_rollup_defaults_to_yesterday(make_ctx):
    result = await ClickRollupHandler().execute(make_ctx(JobType.CLICK_ROLLUP), {})

    assert result["stat_date"] == (utcnow().date() - timedelta(days=1)).isoformat()
    assert result["groups"] == 0


async def test_click_rollup_rejects_invalid_date(make_ctx):
    with pytest.raises(NonRetryableJobError, match="Invalid rollup_date"):
        await ClickRollupHandler().execute(
            make_ctx(JobType.CLICK_ROLLUP), {"rollup_date": "14/03/2026"}
        )
