"""
Handler registry assembly.

The registry is built once at process start and frozen. Deployments pass
the handlers they ship; the reference handlers are included by default.
"""

from typing import Iterable

from jobcore.config.logging import get_logger
from jobcore.v1.budget.governor import BudgetGovernor
from jobcore.v1.core.registries import HandlerRegistry, JobHandler
from jobcore.v1.infra.jobs.handlers import (
    AiTaggingHandler,
    ClickRollupHandler,
    TaggingBackend,
)

logger = get_logger(__name__)


def default_handlers(
    governor: BudgetGovernor | None = None,
    tagging_backend: TaggingBackend | None = None,
) -> list[JobHandler]:
    handlers: list[JobHandler] = [ClickRollupHandler()]
    if governor is not None and tagging_backend is not None:
        handlers.append(AiTaggingHandler(governor, tagging_backend))
    return handlers


def build_handler_registry(
    handlers: Iterable[JobHandler] | None = None,
    governor: BudgetGovernor | None = None,
    tagging_backend: TaggingBackend | None = None,
    require_all: bool = False,
) -> HandlerRegistry:
    """
    Index handlers by declared type and freeze the registry.

    Raises:
        DuplicateHandlerError: two handlers declare the same type
        RuntimeError: ``require_all`` is set and a catalog type has no handler
    """
    if handlers is None:
        handlers = default_handlers(governor, tagging_backend)

    registry = HandlerRegistry.build(handlers)
    missing = registry.missing_types()

    if missing and require_all:
        raise RuntimeError(
            "No handler registered for: " + ", ".join(t.value for t in missing)
        )
    if missing:
        logger.warning(
            "Job types without handlers will fail on dispatch",
            missing_types=[t.value for t in missing],
        )

    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry
