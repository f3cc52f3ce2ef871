from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Date, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobcore.infra.database import Base, UTCDateTime, utcnow


class LinkClick(Base):
    """Raw click event, written by the request path and rolled up daily."""

    __tablename__ = "link_clicks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    click_date: Mapped[date] = mapped_column(Date, nullable=False)
    click_timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    click_type: Mapped[str] = mapped_column(Text, nullable=False)
    target_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    target_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    category_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    user_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    session_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_link_clicks_type_date", "click_type", "click_date"),
        Index("ix_link_clicks_date", "click_date"),
    )


class ClickStatsDaily(Base):
    """Per-day click totals by click type and category."""

    __tablename__ = "click_stats_daily"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)
    click_type: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    total_clicks: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unique_users: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    unique_sessions: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "stat_date",
            "click_type",
            "category_id",
            name="uq_click_stats_daily_date_type_category",
        ),
        Index("ix_click_stats_daily_date", "stat_date"),
    )
