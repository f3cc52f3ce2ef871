"""create delayed jobs, budget periods and click tables

Revision ID: 3b7e1c9a4d20
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1c9a4d20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "delayed_jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="JobType value"),
        sa.Column(
            "queue", sa.Text, nullable=False, comment="Queue family derived from type"
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            comment="Copied from the queue family, lower is served first",
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Opaque handler parameters",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="queued",
            comment="queued|running|succeeded|failed",
        ),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("scheduled_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column(
            "next_attempt_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            comment="Earliest time the job may be leased",
        ),
        # Lease
        sa.Column("locked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker id holding the lease"
        ),
        sa.Column("heartbeat_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Outcome
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("error_code", sa.Text, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Tracing and deduplication
        sa.Column("dedupe_key", sa.Text, nullable=True),
        sa.Column("request_id", sa.Text, nullable=True),
        sa.Column(
            "origin", sa.Text, nullable=True, comment="Component that enqueued the job"
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed')",
            name="delayed_jobs_status_check",
        ),
        sa.CheckConstraint(
            "queue IN ('HIGH', 'DEFAULT', 'LOW', 'BULK', 'SCREENSHOT')",
            name="delayed_jobs_queue_check",
        ),
        sa.CheckConstraint(
            "attempt <= max_attempts", name="delayed_jobs_attempt_check"
        ),
    )

    # Claim path: ready jobs of one family ordered by priority then due time
    op.create_index(
        "ix_delayed_jobs_ready",
        "delayed_jobs",
        ["queue", "status", "priority", "next_attempt_at"],
    )
    op.create_index("ix_delayed_jobs_type", "delayed_jobs", ["type"])
    op.create_index(
        "ix_delayed_jobs_dedupe_key", "delayed_jobs", ["type", "dedupe_key"]
    )
    op.create_index(
        "ix_delayed_jobs_running_heartbeat",
        "delayed_jobs",
        ["heartbeat_at"],
        postgresql_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "budget_periods",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "month", sa.Date, nullable=False, comment="First day of the calendar month"
        ),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("spent_cents", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("limit_cents", sa.BigInteger, nullable=False),
        sa.Column("total_requests", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("tokens_input", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("tokens_output", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column(
            "alert_severity",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="Highest threshold already alerted this month",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "month", "provider", name="uq_budget_periods_month_provider"
        ),
    )

    op.create_table(
        "link_clicks",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("click_date", sa.Date, nullable=False),
        sa.Column("click_timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("click_type", sa.Text, nullable=False),
        sa.Column("target_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("target_url", sa.Text, nullable=True),
        sa.Column("category_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("session_id", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_link_clicks_type_date", "link_clicks", ["click_type", "click_date"]
    )
    op.create_index("ix_link_clicks_date", "link_clicks", ["click_date"])

    op.create_table(
        "click_stats_daily",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("stat_date", sa.Date, nullable=False),
        sa.Column("click_type", sa.Text, nullable=False),
        sa.Column("category_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("total_clicks", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("unique_users", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("unique_sessions", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "stat_date",
            "click_type",
            "category_id",
            name="uq_click_stats_daily_date_type_category",
        ),
    )
    op.create_index("ix_click_stats_daily_date", "click_stats_daily", ["stat_date"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("click_stats_daily")
    op.drop_table("link_clicks")
    op.drop_table("budget_periods")
    op.drop_table("delayed_jobs")
