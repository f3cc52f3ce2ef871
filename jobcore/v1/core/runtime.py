"""
Process-level collaborators shared by the HTTP layer.

The application lifespan stores the alert sink and (optionally) the
dispatcher on ``app.state``; route dependencies read them from there.
"""

from fastapi import Depends, Request

from jobcore.config.settings import Settings, get_settings
from jobcore.infra.database import Database, get_database
from jobcore.v1.budget.governor import BudgetGovernor
from jobcore.v1.core.alerts import AlertSink, LoggingAlertSink
from jobcore.v1.infra.jobs.dispatcher import JobDispatcher


def get_alert_sink(request: Request) -> AlertSink:
    sink = getattr(request.app.state, "alert_sink", None)
    return sink if sink is not None else LoggingAlertSink()


def get_governor(
    settings: Settings = Depends(get_settings),
    database: Database = Depends(get_database),
    alert_sink: AlertSink = Depends(get_alert_sink),
) -> BudgetGovernor:
    return BudgetGovernor(settings, database.SessionLocal, alert_sink)


def get_dispatcher(request: Request) -> JobDispatcher | None:
    return getattr(request.app.state, "dispatcher", None)


GovernorDep = Depends(get_governor)
DispatcherDep = Depends(get_dispatcher)
