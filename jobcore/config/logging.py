import logging
import sys
from typing import Any

import structlog

from .settings import Settings
from .settings import settings as default_settings

# Stdlib loggers that drown out job events at INFO
NOISY_LOGGERS = ("aiosqlite", "httpx", "httpcore")


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog for the API process, the worker and the CLI drain.

    Job executions log through a logger bound in their JobContext, so the
    only process-wide context kept here is the HTTP request id.
    """
    settings = settings or default_settings
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if settings.debug else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.sql_echo else logging.WARNING
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
    ]
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def bind_request_context(request_id: str, **context: Any) -> None:
    """Attach the request id (and method/path) to every event of this request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
