"""
Operator escalation signals.

Terminal job failures and budget threshold crossings are surfaced as Alert
values handed to an AlertSink. The default sink writes a structured log
event; deployments can plug in email or paging sinks.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from jobcore.config.logging import get_logger
from jobcore.infra.database import utcnow

logger = get_logger(__name__)


class AlertLevel(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"


@dataclass(frozen=True)
class Alert:
    kind: str
    level: AlertLevel
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=utcnow)


class AlertSink(Protocol):
    async def emit(self, alert: Alert) -> None: ...


class LoggingAlertSink:
    """Writes alerts to the structured log."""

    async def emit(self, alert: Alert) -> None:
        log = logger.error if alert.level is not AlertLevel.WARNING else logger.warning
        log(
            "Operator alert",
            alert_kind=alert.kind,
            level=alert.level.value,
            message=alert.message,
            **alert.details,
        )


class RecordingAlertSink:
    """Keeps alerts in memory; used by the admin API and tests."""

    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self.alerts: list[Alert] = []

    async def emit(self, alert: Alert) -> None:
        self.alerts.append(alert)
        if len(self.alerts) > self.capacity:
            del self.alerts[: len(self.alerts) - self.capacity]

    def of_kind(self, kind: str) -> list[Alert]:
        return [a for a in self.alerts if a.kind == kind]


class FanoutAlertSink:
    """Delivers every alert to several sinks; one failing sink does not block the rest."""

    def __init__(self, *sinks: AlertSink):
        self.sinks = list(sinks)

    async def emit(self, alert: Alert) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(alert)
            except Exception:
                logger.exception(
                    "Alert sink failed", sink=type(sink).__name__, alert_kind=alert.kind
                )
