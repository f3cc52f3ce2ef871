from collections.abc import AsyncGenerator, Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from jobcore.config.settings import Settings
from jobcore.infra.database import Base
from jobcore.main import create_app
from jobcore.v1.analytics import models as analytics_models  # noqa: F401
from jobcore.v1.budget import models as budget_models  # noqa: F401
from jobcore.v1.core.alerts import RecordingAlertSink
from jobcore.v1.core.registries import HandlerRegistry
from jobcore.v1.infra.jobs import models as job_models  # noqa: F401
from jobcore.v1.infra.jobs.catalog import JobType
from jobcore.v1.infra.jobs.dispatcher import JobDispatcher
from jobcore.v1.infra.jobs.retry import RetryPolicy


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordingHandler:
    """Handler whose behaviour is scripted per call."""

    def __init__(self, job_type: JobType, behaviour=None):
        self.job_type = job_type
        self.behaviour = behaviour
        self.calls: list[dict[str, Any]] = []

    def handles_type(self) -> JobType:
        return self.job_type

    async def execute(self, ctx, payload):
        self.calls.append({"attempt": ctx.attempt, "payload": payload})
        if self.behaviour is not None:
            return await self.behaviour(ctx, payload)
        return {"ok": True}


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        job_backoff_jitter=0,
        job_backoff_base_s=10,
        job_max_backoff_s=600,
        job_visibility_timeout_s=300,
        job_shutdown_grace_s=1,
        metrics_enabled=False,
    )


@pytest.fixture
async def engine(tmp_path):
    # File-backed so every session gets its own connection and SQLite's write
    # lock serialises concurrent writers the way row locks would.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'store.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def make_dispatcher(test_settings, session_factory, clock, alerts):
    """Build a dispatcher over the shared test store with the given handlers."""

    def _make(*handlers, worker_id: str = "worker-1") -> JobDispatcher:
        return JobDispatcher(
            test_settings,
            session_factory,
            HandlerRegistry.build(handlers),
            retry_policy=RetryPolicy.from_settings(test_settings),
            alert_sink=alerts,
            clock=clock,
            worker_id=worker_id,
        )

    return _make


@pytest.fixture
def api_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobcore.db'}",
        dispatcher_enabled=False,
        metrics_enabled=False,
        job_backoff_jitter=0,
    )


@pytest.fixture
def client(api_settings) -> Generator[TestClient, None, None]:
    """Test client over a fresh file-backed SQLite database."""
    app = create_app(api_settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def enqueue(session_factory, test_settings, clock):
    """Enqueue a job that is due at the fake clock's current time."""
    from jobcore.v1.infra.jobs.service import JobService

    async def _enqueue(job_type: JobType, payload=None, **kwargs):
        kwargs.setdefault("scheduled_at", clock())
        async with session_factory() as session:
            return await JobService(test_settings).enqueue(
                session, job_type, payload, **kwargs
            )

    return _enqueue


@pytest.fixture
def load_job(session_factory):
    from jobcore.v1.infra.jobs.repository import JobRepository

    async def _load(job_id):
        async with session_factory() as session:
            return await JobRepository(session).get(job_id)

    return _load


@pytest.fixture
def make_handler():
    return RecordingHandler
