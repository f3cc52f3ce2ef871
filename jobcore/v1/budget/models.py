from datetime import date, datetime
from enum import Enum

from sqlalchemy import BigInteger, Date, Integer, SmallInteger, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from jobcore.infra.database import Base, UTCDateTime, utcnow


class BudgetAction(str, Enum):
    """Throttle level derived from the share of the monthly budget spent."""

    NORMAL = "NORMAL"
    REDUCE = "REDUCE"
    QUEUE = "QUEUE"
    HARD_STOP = "HARD_STOP"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    BudgetAction.NORMAL: 0,
    BudgetAction.REDUCE: 1,
    BudgetAction.QUEUE: 2,
    BudgetAction.HARD_STOP: 3,
}


class BudgetPeriod(Base):
    """Monthly spend and limit for one AI provider."""

    __tablename__ = "budget_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    month: Mapped[date] = mapped_column(
        Date, nullable=False, comment="First day of the calendar month"
    )
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    limit_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_input: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_output: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    alert_severity: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=0,
        comment="Highest threshold already alerted this month",
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("month", "provider", name="uq_budget_periods_month_provider"),
    )

    @property
    def percent_used(self) -> float:
        if self.limit_cents <= 0:
            return 100.0
        return self.spent_cents / self.limit_cents * 100

    @property
    def remaining_cents(self) -> int:
        return max(0, self.limit_cents - self.spent_cents)
