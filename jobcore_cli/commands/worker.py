"""Worker Commands - Run the dispatcher from the command line"""

import asyncio

import typer
from rich.console import Console

from ..utils.formatting import print_error, print_info, print_success

console = Console()
app = typer.Typer(name="worker", help="Run the job dispatcher locally")


@app.command("run")
def run_worker():
    """🏃 Run the dispatcher until interrupted"""
    from jobcore.worker import main as worker_main

    print_info("Starting dispatcher (Ctrl+C to stop)")
    worker_main()


@app.command("drain")
def drain_queue(
    queue: str | None = typer.Option(None, "--queue", "-q", help="Only this queue family"),
):
    """🚰 Execute every due job once, then exit"""
    from jobcore.config.logging import setup_logging
    from jobcore.config.settings import settings
    from jobcore.v1.infra.jobs.catalog import JobQueue
    from jobcore.worker import drain

    family = None
    if queue:
        try:
            family = JobQueue(queue.upper())
        except ValueError:
            print_error(
                f"Unknown queue '{queue}'. Choose from: "
                + ", ".join(q.value for q in JobQueue)
            )
            raise typer.Exit(1) from None

    setup_logging(settings)
    executed = asyncio.run(drain(settings, family))
    print_success(f"Drained {executed} job(s)")
