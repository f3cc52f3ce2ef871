"""
Monthly AI budget governor.

Spend is tracked per (month, provider). Every decision re-reads the
current period from the store, so recorded usage is reflected in the very
next batch and every process sees the same numbers.
"""

import math
from datetime import date, datetime
from typing import Callable

from sqlalchemy import desc, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.config.logging import get_logger
from jobcore.config.settings import Settings
from jobcore.infra.database import utcnow
from jobcore.v1.budget.models import BudgetAction, BudgetPeriod
from jobcore.v1.core.alerts import Alert, AlertLevel, AlertSink, LoggingAlertSink
from jobcore.v1.core.exceptions import ValidationError
from jobcore.v1.infra.jobs.telemetry import BUDGET_PERCENT_USED

logger = get_logger(__name__)

# Cents per one million tokens
SONNET_PRICING = (300, 1500)
HAIKU_PRICING = (25, 125)
EMBEDDING_PRICING = 300

_ALERT_LEVELS = {
    BudgetAction.REDUCE: AlertLevel.WARNING,
    BudgetAction.QUEUE: AlertLevel.CRITICAL,
    BudgetAction.HARD_STOP: AlertLevel.EMERGENCY,
}


def month_start(moment: datetime | date) -> date:
    return date(moment.year, moment.month, 1)


def estimate_cost_cents(model: str, input_tokens: int, output_tokens: int = 0) -> int:
    """
    Estimated cost of one call in whole cents, rounded up.

    Embedding models bill input tokens only; Haiku models use Haiku pricing;
    anything else is priced as Sonnet.
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValidationError("Token counts cannot be negative")

    name = model.lower()
    if "embed" in name:
        cents = input_tokens * EMBEDDING_PRICING / 1_000_000
    elif "haiku" in name:
        cents = (
            input_tokens * HAIKU_PRICING[0] + output_tokens * HAIKU_PRICING[1]
        ) / 1_000_000
    else:
        cents = (
            input_tokens * SONNET_PRICING[0] + output_tokens * SONNET_PRICING[1]
        ) / 1_000_000
    return math.ceil(cents)


class BudgetGovernor:
    """Maps month-to-date spend to a throttle action and records usage."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        alert_sink: AlertSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.clock = clock

    def _provider(self, provider: str | None) -> str:
        return provider or self.settings.budget_provider

    def action_for_percent(self, percent: float) -> BudgetAction:
        """Pure threshold mapping; each boundary belongs to the higher action."""
        if percent >= self.settings.budget_hard_stop_threshold:
            return BudgetAction.HARD_STOP
        if percent >= self.settings.budget_queue_threshold:
            return BudgetAction.QUEUE
        if percent >= self.settings.budget_reduce_threshold:
            return BudgetAction.REDUCE
        return BudgetAction.NORMAL

    def should_stop_processing(self, action: BudgetAction) -> bool:
        """True when no costed work may start under ``action``."""
        return BudgetAction(action) in (BudgetAction.QUEUE, BudgetAction.HARD_STOP)

    def batch_size_for(self, action: BudgetAction) -> int:
        action = BudgetAction(action)
        if action is BudgetAction.NORMAL:
            return self.settings.budget_normal_batch_size
        if action is BudgetAction.REDUCE:
            return self.settings.budget_reduce_batch_size
        return 0

    # Reads

    async def get_period(
        self, provider: str | None = None, month: date | None = None
    ) -> BudgetPeriod | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BudgetPeriod)
                .where(
                    BudgetPeriod.month == (month or month_start(self.clock())),
                    BudgetPeriod.provider == self._provider(provider),
                )
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def percent_used(self, provider: str | None = None) -> float:
        provider = self._provider(provider)
        period = await self.get_period(provider)
        percent = period.percent_used if period else 0.0
        BUDGET_PERCENT_USED.labels(provider).set(percent)
        return percent

    async def current_action(self, provider: str | None = None) -> BudgetAction:
        """Action for the current month; raises a threshold alert on first crossing."""
        provider = self._provider(provider)
        percent = await self.percent_used(provider)
        action = self.action_for_percent(percent)
        if action is not BudgetAction.NORMAL:
            await self._maybe_alert(provider, action, percent)
        return action

    async def should_stop_now(self, provider: str | None = None) -> bool:
        """Read current spend and apply should_stop_processing."""
        return self.should_stop_processing(await self.current_action(provider))

    async def current_batch_size(self, provider: str | None = None) -> int:
        return self.batch_size_for(await self.current_action(provider))

    async def remaining_cents(self, provider: str | None = None) -> int:
        period = await self.get_period(provider)
        if period is None:
            return self.settings.budget_default_limit_cents
        return period.remaining_cents

    async def history(
        self, provider: str | None = None, months: int = 12
    ) -> list[BudgetPeriod]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BudgetPeriod)
                .where(BudgetPeriod.provider == self._provider(provider))
                .order_by(desc(BudgetPeriod.month))
                .limit(months)
            )
            return list(result.scalars().all())

    # Writes

    async def _ensure_period(
        self, session: AsyncSession, month: date, provider: str
    ) -> None:
        """Create the month row if missing; a concurrent creator wins harmlessly."""
        exists = await session.execute(
            select(BudgetPeriod.id).where(
                BudgetPeriod.month == month, BudgetPeriod.provider == provider
            )
        )
        if exists.scalar_one_or_none() is not None:
            return

        now = self.clock()
        session.add(
            BudgetPeriod(
                month=month,
                provider=provider,
                spent_cents=0,
                limit_cents=self.settings.budget_default_limit_cents,
                total_requests=0,
                tokens_input=0,
                tokens_output=0,
                alert_severity=0,
                created_at=now,
                updated_at=now,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()

    async def record_usage(
        self,
        cost_cents: int,
        tokens_input: int = 0,
        tokens_output: int = 0,
        requests: int = 1,
        provider: str | None = None,
    ) -> BudgetPeriod:
        """Atomically add usage to the current month."""
        if cost_cents < 0 or tokens_input < 0 or tokens_output < 0 or requests < 0:
            raise ValidationError("Usage values cannot be negative")

        provider = self._provider(provider)
        now = self.clock()
        month = month_start(now)

        async with self.session_factory() as session:
            await self._ensure_period(session, month, provider)
            await session.execute(
                update(BudgetPeriod)
                .where(BudgetPeriod.month == month, BudgetPeriod.provider == provider)
                .values(
                    spent_cents=BudgetPeriod.spent_cents + cost_cents,
                    total_requests=BudgetPeriod.total_requests + requests,
                    tokens_input=BudgetPeriod.tokens_input + tokens_input,
                    tokens_output=BudgetPeriod.tokens_output + tokens_output,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.debug(
            "Recorded AI usage",
            provider=provider,
            cost_cents=cost_cents,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
        )
        return await self.get_period(provider, month)

    async def set_limit(
        self, limit_cents: int, provider: str | None = None, month: date | None = None
    ) -> BudgetPeriod:
        if limit_cents < 0:
            raise ValidationError(
                "Budget limit cannot be negative", details={"limit_cents": limit_cents}
            )

        provider = self._provider(provider)
        month = month_start(month or self.clock())

        async with self.session_factory() as session:
            await self._ensure_period(session, month, provider)
            await session.execute(
                update(BudgetPeriod)
                .where(BudgetPeriod.month == month, BudgetPeriod.provider == provider)
                .values(limit_cents=limit_cents, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(
            "Budget limit updated",
            provider=provider,
            month=month.isoformat(),
            limit_cents=limit_cents,
        )
        return await self.get_period(provider, month)

    async def _maybe_alert(
        self, provider: str, action: BudgetAction, percent: float
    ) -> None:
        """Emit one alert per threshold per month, across all processes."""
        month = month_start(self.clock())
        async with self.session_factory() as session:
            result = await session.execute(
                update(BudgetPeriod)
                .where(
                    BudgetPeriod.month == month,
                    BudgetPeriod.provider == provider,
                    BudgetPeriod.alert_severity < action.severity,
                )
                .values(alert_severity=action.severity)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            return

        logger.warning(
            "Budget threshold crossed",
            provider=provider,
            action=action.value,
            percent_used=round(percent, 2),
        )
        await self.alert_sink.emit(
            Alert(
                kind="budget.threshold",
                level=_ALERT_LEVELS[action],
                message=f"AI budget for {provider} at {percent:.1f}% ({action.value})",
                details={
                    "provider": provider,
                    "action": action.value,
                    "percent_used": round(percent, 2),
                    "month": month.isoformat(),
                },
            )
        )
