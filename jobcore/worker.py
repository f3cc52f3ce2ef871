"""
Standalone dispatcher process.

Runs the job dispatcher without the HTTP API; stops gracefully on SIGINT or
SIGTERM, giving in-flight jobs the configured grace period.
"""

import asyncio
import signal

from jobcore.config.logging import get_logger, setup_logging
from jobcore.config.settings import Settings, settings
from jobcore.infra.database import Database
from jobcore.v1.budget.governor import BudgetGovernor
from jobcore.v1.core.alerts import LoggingAlertSink
from jobcore.v1.infra.jobs.catalog import JobQueue
from jobcore.v1.infra.jobs.dispatcher import JobDispatcher
from jobcore.v1.infra.jobs.registry_init import build_handler_registry
from jobcore.v1.infra.jobs.scheduler import JobScheduler

logger = get_logger(__name__)


def build_dispatcher(settings: Settings, database: Database) -> JobDispatcher:
    alert_sink = LoggingAlertSink()
    governor = BudgetGovernor(settings, database.SessionLocal, alert_sink)
    return JobDispatcher(
        settings,
        database.SessionLocal,
        build_handler_registry(governor=governor),
        alert_sink=alert_sink,
    )


async def run_dispatcher(settings: Settings) -> None:
    database = Database(settings)
    dispatcher = build_dispatcher(settings, database)

    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    scheduler = JobScheduler(settings, database.SessionLocal)
    scheduler.start()
    runner = asyncio.create_task(dispatcher.start())
    waiter = asyncio.create_task(stopping.wait())
    try:
        await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if stopping.is_set():
            logger.info("Shutdown signal received", worker_id=dispatcher.worker_id)
            await dispatcher.stop()
        else:
            waiter.cancel()
        # Re-raises if the dispatcher loops crashed
        await runner
    finally:
        scheduler.stop()
        await database.close()


async def drain(
    settings: Settings, queue: JobQueue | None = None, max_rounds: int = 1000
) -> int:
    """Run due jobs until nothing is claimable. Returns the number executed."""
    database = Database(settings)
    dispatcher = build_dispatcher(settings, database)
    executed = 0
    try:
        await dispatcher.recover_stale()
        for _ in range(max_rounds):
            ran = await dispatcher.run_once(queue)
            if ran == 0:
                break
            executed += ran
    finally:
        await database.close()

    logger.info("Drain finished", executed=executed, queue=queue.value if queue else None)
    return executed


def main() -> None:
    setup_logging(settings)
    asyncio.run(run_dispatcher(settings))


if __name__ == "__main__":
    main()
