from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.config.logging import get_logger
from jobcore.config.settings import Settings, SettingsDep
from jobcore.infra.database import get_session
from jobcore.v1.budget.governor import BudgetGovernor
from jobcore.v1.core.alerts import RecordingAlertSink
from jobcore.v1.core.exceptions import create_success_response
from jobcore.v1.core.runtime import DispatcherDep, GovernorDep
from jobcore.v1.infra.jobs.dispatcher import JobDispatcher
from jobcore.v1.infra.jobs.models import Job, JobStatus
from jobcore.v1.infra.jobs.repository import JobRepository

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class DispatcherHealth(BaseModel):
    """Queue and lease status as seen from the store."""

    active_workers: int
    in_process: bool
    stale_leases: int = 0
    queue_depth: int = 0
    last_heartbeat_age_seconds: int | None = None


class BudgetHealth(BaseModel):
    provider: str
    action: str
    percent_used: float


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep,
    session: AsyncSession = Depends(get_session),
    governor: BudgetGovernor = GovernorDep,
    dispatcher: JobDispatcher | None = DispatcherDep,
):
    """Health check with database, queue and budget status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    # Queue and budget checks degrade to null rather than failing overall health
    dispatcher_health = None
    budget_health = None
    if db_health.connected:
        try:
            dispatcher_health = await _check_dispatcher_health(
                session, settings, dispatcher
            )
        except Exception:
            logger.exception("Dispatcher health check failed")
        try:
            budget_health = await _check_budget_health(governor)
        except Exception:
            logger.exception("Budget health check failed")

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "dispatcher": dispatcher_health.model_dump() if dispatcher_health else None,
        "budget": budget_health.model_dump() if budget_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_dispatcher_health(
    session: AsyncSession, settings: Settings, dispatcher: JobDispatcher | None
) -> DispatcherHealth:
    now = datetime.now(UTC)
    repo = JobRepository(session)

    # Workers with a heartbeat inside the visibility window
    cutoff = now - timedelta(seconds=settings.job_visibility_timeout_s)
    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.locked_by))).where(
            Job.status == JobStatus.RUNNING.value, Job.heartbeat_at >= cutoff
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_heartbeat_result = await session.execute(
        select(func.max(Job.heartbeat_at)).where(
            Job.status == JobStatus.RUNNING.value, Job.heartbeat_at.is_not(None)
        )
    )
    last_heartbeat = last_heartbeat_result.scalar()
    last_heartbeat_age_seconds = None
    if last_heartbeat:
        if last_heartbeat.tzinfo is None:
            last_heartbeat = last_heartbeat.replace(tzinfo=UTC)
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    by_status = await repo.counts_by(Job.status)
    queue_depth = by_status.get(JobStatus.QUEUED.value, 0) + by_status.get(
        JobStatus.RUNNING.value, 0
    )

    return DispatcherHealth(
        active_workers=active_workers,
        in_process=dispatcher is not None and dispatcher.running,
        stale_leases=await repo.count_stale(cutoff),
        queue_depth=queue_depth,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
    )


async def _check_budget_health(governor: BudgetGovernor) -> BudgetHealth:
    provider = governor.settings.budget_provider
    percent = await governor.percent_used(provider)
    return BudgetHealth(
        provider=provider,
        action=governor.action_for_percent(percent).value,
        percent_used=round(percent, 2),
    )


@router.get("/alerts", response_model=dict)
async def recent_alerts(
    request: Request,
    kind: str | None = Query(default=None, description="Filter by alert kind"),
    limit: int = Query(default=50, ge=1, le=500),
):
    """Most recent operator alerts raised by this process."""

    recorder: RecordingAlertSink | None = getattr(request.app.state, "alert_log", None)
    alerts = [] if recorder is None else (
        recorder.of_kind(kind) if kind else list(recorder.alerts)
    )
    return create_success_response(
        data=[
            {
                "kind": alert.kind,
                "level": alert.level.value,
                "message": alert.message,
                "details": alert.details,
                "raised_at": alert.raised_at.isoformat(),
            }
            for alert in reversed(alerts[-limit:])
        ]
    )
