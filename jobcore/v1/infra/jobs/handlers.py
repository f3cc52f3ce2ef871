"""
Reference job handlers.

These exercise the handler contract end to end: a budget-gated AI batch
handler and an idempotent analytics rollup. Business logic (what a tag is,
how it is stored) lives behind the injected backend.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Iterable, Protocol, TypeVar

from sqlalchemy import delete, distinct, func, select

from jobcore.infra.database import utcnow
from jobcore.v1.analytics.models import ClickStatsDaily, LinkClick
from jobcore.v1.budget.governor import BudgetGovernor, estimate_cost_cents
from jobcore.v1.core.exceptions import NonRetryableJobError, RetryableJobError
from jobcore.v1.infra.jobs.catalog import JobType
from jobcore.v1.infra.jobs.context import JobContext
from jobcore.v1.infra.jobs.telemetry import BUDGET_THROTTLES

T = TypeVar("T")


@dataclass
class BatchResult:
    """Outcome of one sub-batch; item failures are counted, never raised."""

    processed: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return self.processed + self.failed

    def merge(self, other: "BatchResult") -> "BatchResult":
        self.processed += other.processed
        self.failed += other.failed
        self.errors.update(other.errors)
        return self


async def run_batch(
    items: Iterable[T], process: Callable[[T], Awaitable[Any]]
) -> BatchResult:
    """Run ``process`` over every item, isolating per-item failures."""
    result = BatchResult()
    for item in items:
        try:
            await process(item)
            result.processed += 1
        except Exception as exc:
            result.failed += 1
            result.errors[str(item)] = f"{type(exc).__name__}: {exc}"
    return result


@dataclass(frozen=True)
class TaggingUsage:
    """Token usage reported by the tagging backend for one item."""

    model: str
    tokens_input: int = 0
    tokens_output: int = 0


class TaggingBackend(Protocol):
    async def tag(self, item_id: str) -> TaggingUsage:
        """Tag one item and persist the tags; raise on failure."""
        ...


class UntaggedItemSource(Protocol):
    async def untagged_item_ids(self, limit: int) -> list[str]:
        """Ids of items still waiting for AI tags, oldest first."""
        ...


class AiTaggingHandler:
    """
    Budget-gated AI tagging over a list of items.

    Payload expected:
    {
        "item_ids": ["id-1", "id-2", ...],
        "provider": "anthropic"  # optional, defaults to the configured provider
    }

    The governor is consulted before the first sub-batch and again before
    each following one. Work stops as soon as the action is worse than it
    was at the start; unprocessed items are reported as deferred.
    """

    def __init__(self, governor: BudgetGovernor, backend: TaggingBackend):
        self.governor = governor
        self.backend = backend

    def handles_type(self) -> JobType:
        return JobType.AI_TAGGING

    async def execute(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        item_ids = payload.get("item_ids")
        if not isinstance(item_ids, list):
            raise NonRetryableJobError("item_ids (list) is required in payload")
        provider = payload.get("provider") or self.governor.settings.budget_provider

        initial = await self.governor.current_action(provider)
        if self.governor.should_stop_processing(initial):
            BUDGET_THROTTLES.labels(provider, initial.value).inc()
            ctx.logger.warning(
                "Skipping AI batch, budget exhausted",
                action=initial.value,
                deferred=len(item_ids),
            )
            return {
                "status": "skipped",
                "action": initial.value,
                "processed": 0,
                "failed": 0,
                "deferred": len(item_ids),
            }

        pending = [str(item_id) for item_id in item_ids]
        totals = BatchResult()
        batch_sizes: list[int] = []
        action = initial

        async def tag_one(item_id: str) -> None:
            usage = await self.backend.tag(item_id)
            await self.governor.record_usage(
                estimate_cost_cents(usage.model, usage.tokens_input, usage.tokens_output),
                tokens_input=usage.tokens_input,
                tokens_output=usage.tokens_output,
                provider=provider,
            )

        while pending:
            size = self.governor.batch_size_for(action)
            batch, pending = pending[:size], pending[size:]
            batch_sizes.append(len(batch))
            totals.merge(await run_batch(batch, tag_one))

            if not pending:
                break
            action = await self.governor.current_action(provider)
            if action.severity > initial.severity:
                BUDGET_THROTTLES.labels(provider, action.value).inc()
                ctx.logger.warning(
                    "Stopping AI batch, budget action worsened",
                    initial_action=initial.value,
                    action=action.value,
                    deferred=len(pending),
                )
                break

        if totals.attempted and totals.failed == totals.attempted:
            raise RetryableJobError(f"All {totals.failed} items failed to tag")

        if totals.failed:
            ctx.logger.warning(
                "AI batch completed with item failures",
                processed=totals.processed,
                failed=totals.failed,
            )

        return {
            "status": "completed" if not pending else "partial",
            "action": action.value,
            "processed": totals.processed,
            "failed": totals.failed,
            "deferred": len(pending),
            "batch_sizes": batch_sizes,
            "errors": totals.errors,
        }


class ClickRollupHandler:
    """
    Daily click rollup.

    Payload expected:
    {
        "rollup_date": "2026-01-15"  # optional, defaults to yesterday (UTC)
    }

    The day's totals are recomputed from raw clicks and replace whatever was
    stored for that day, so re-running the job converges on the same rows.
    """

    def handles_type(self) -> JobType:
        return JobType.CLICK_ROLLUP

    def _rollup_date(self, payload: dict[str, Any]) -> date:
        raw = payload.get("rollup_date")
        if raw is None:
            return utcnow().date() - timedelta(days=1)
        try:
            return date.fromisoformat(str(raw))
        except ValueError:
            raise NonRetryableJobError(f"Invalid rollup_date format: {raw}") from None

    async def execute(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        stat_date = self._rollup_date(payload)
        now = utcnow()

        async with ctx.session() as session:
            aggregates = await session.execute(
                select(
                    LinkClick.click_type,
                    LinkClick.category_id,
                    func.count(LinkClick.id),
                    func.count(distinct(LinkClick.user_id)),
                    func.count(distinct(LinkClick.session_id)),
                )
                .where(LinkClick.click_date == stat_date)
                .group_by(LinkClick.click_type, LinkClick.category_id)
            )
            rows = aggregates.all()

            await session.execute(
                delete(ClickStatsDaily).where(ClickStatsDaily.stat_date == stat_date)
            )
            for click_type, category_id, total, users, sessions in rows:
                session.add(
                    ClickStatsDaily(
                        stat_date=stat_date,
                        click_type=click_type,
                        category_id=category_id,
                        total_clicks=total,
                        unique_users=users,
                        unique_sessions=sessions,
                        created_at=now,
                        updated_at=now,
                    )
                )

        total_clicks = sum(row[2] for row in rows)
        ctx.logger.info(
            "Click rollup completed",
            stat_date=stat_date.isoformat(),
            groups=len(rows),
            total_clicks=total_clicks,
        )
        return {
            "status": "completed",
            "stat_date": stat_date.isoformat(),
            "groups": len(rows),
            "total_clicks": total_clicks,
        }


__all__ = [
    "AiTaggingHandler",
    "BatchResult",
    "ClickRollupHandler",
    "TaggingBackend",
    "TaggingUsage",
    "run_batch",
]
