import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from jobcore.config.logging import get_logger, setup_logging
from jobcore.config.settings import Settings, get_settings
from jobcore.config.settings import settings as default_settings
from jobcore.infra.database import Database, set_database
from jobcore.v1.budget.governor import BudgetGovernor
from jobcore.v1.budget.routes import router as budget_router
from jobcore.v1.core.alerts import FanoutAlertSink, LoggingAlertSink, RecordingAlertSink
from jobcore.v1.core.exceptions import (
    JobCoreException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    jobcore_exception_handler,
    request_validation_handler,
)
from jobcore.v1.healthz import router as health_router
from jobcore.v1.infra.jobs.dispatcher import JobDispatcher
from jobcore.v1.infra.jobs.registry_init import build_handler_registry
from jobcore.v1.infra.jobs.routes import router as jobs_router
from jobcore.v1.infra.jobs.scheduler import JobScheduler

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None, database: Database | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or default_settings

    # Initialize structured logging
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(settings)
        set_database(db)
        if settings.database_url.startswith("sqlite"):
            await db.create_all()

        alert_log = RecordingAlertSink()
        app.state.alert_log = alert_log
        app.state.alert_sink = FanoutAlertSink(LoggingAlertSink(), alert_log)
        app.state.dispatcher = None
        app.state.scheduler = None

        dispatcher_task: asyncio.Task | None = None
        if settings.dispatcher_enabled:
            governor = BudgetGovernor(settings, db.SessionLocal, app.state.alert_sink)
            dispatcher = JobDispatcher(
                settings,
                db.SessionLocal,
                build_handler_registry(governor=governor),
                alert_sink=app.state.alert_sink,
            )
            app.state.dispatcher = dispatcher
            dispatcher_task = asyncio.create_task(dispatcher.start())
        if settings.scheduler_enabled:
            app.state.scheduler = JobScheduler(settings, db.SessionLocal)
            app.state.scheduler.start()

        logger.info(
            "Application started",
            environment=settings.environment,
            dispatcher_enabled=settings.dispatcher_enabled,
            scheduler_enabled=settings.scheduler_enabled,
        )
        try:
            yield
        finally:
            if app.state.scheduler is not None:
                app.state.scheduler.stop()
            if dispatcher_task is not None:
                await app.state.dispatcher.stop()
                await dispatcher_task
            if database is None:
                await db.close()
            set_database(None)

    app = FastAPI(
        title=settings.app_name,
        description="Delayed job orchestration with per-queue concurrency and AI budget control",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if settings is not default_settings:
        app.dependency_overrides[get_settings] = lambda: settings

    # Add exception handlers
    app.add_exception_handler(JobCoreException, jobcore_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(budget_router, prefix="/v1")

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jobcore.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        workers=1 if default_settings.debug else default_settings.workers,
    )
