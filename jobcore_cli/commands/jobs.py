"""Jobs Commands - Inspect and manage delayed jobs"""

import json

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobCoreClient, JobCoreError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_jobs_table,
    create_queue_stats_table,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Delayed job inspection and management")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Filter by queue family"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs, newest first"""
    base_url = config.get("api.base_url")
    if limit is None:
        limit = int(config.get("display.jobs_per_page", 20))

    try:
        with JobCoreClient(base_url) as client:
            data = client.list_jobs(
                status=status, type=type, queue=queue, limit=limit, offset=offset
            )
    except JobCoreError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    total = data.get("total", len(jobs))

    if not jobs:
        console.print(
            Panel(
                "📭 [yellow]No jobs found![/yellow]",
                title="Empty Results",
                border_style="yellow",
            )
        )
        return

    console.print(create_jobs_table(jobs))
    console.print(f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs")
    if offset + limit < total:
        console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show one job in full"""
    base_url = config.get("api.base_url")

    try:
        with JobCoreClient(base_url) as client:
            job = client.get_job(job_id)
    except JobCoreError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(
        Panel(
            f"🆔 [bold]ID:[/bold] [cyan]{job.get('id')}[/cyan]\n"
            f"📝 [bold]Type:[/bold] [magenta]{job.get('type')}[/magenta] "
            f"([blue]{job.get('queue')}[/blue], priority {job.get('priority')})\n"
            f"✅ [bold]Status:[/bold] {job.get('status')} "
            f"(attempt {job.get('attempt')}/{job.get('max_attempts')})\n"
            f"⏰ [bold]Next attempt:[/bold] {job.get('next_attempt_at')}\n"
            f"🔒 [bold]Locked by:[/bold] {job.get('locked_by') or '—'}\n"
            f"⚠️ [bold]Last error:[/bold] {job.get('last_error') or '—'}",
            title="Job",
            border_style="blue",
        )
    )
    console.print(Panel(json.dumps(job.get("payload", {}), indent=2), title="Payload"))
    if job.get("result"):
        console.print(Panel(json.dumps(job["result"], indent=2), title="Result"))


@app.command("stats")
def job_stats():
    """📊 Job counts by status and queue family"""
    base_url = config.get("api.base_url")

    try:
        with JobCoreClient(base_url) as client:
            stats = client.job_stats()
    except JobCoreError as e:
        print_error(f"Failed to get job stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_queue_stats_table(stats))
    console.print(
        f"\nTotal: [cyan]{stats.get('total_jobs', 0)}[/cyan]  "
        f"Queue depth: [yellow]{stats.get('queue_depth', 0)}[/yellow]  "
        f"Failed (1h): [red]{stats.get('failed_last_hour', 0)}[/red]"
    )


@app.command("enqueue")
def enqueue_job(
    type: str = typer.Argument(..., help="Job type, e.g. CLICK_ROLLUP"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    scheduled_at: str | None = typer.Option(
        None, "--at", help="ISO-8601 earliest run time"
    ),
    max_attempts: int | None = typer.Option(None, "--max-attempts", help="Attempt override"),
    dedupe_key: str | None = typer.Option(None, "--dedupe-key", help="Deduplication key"),
):
    """➕ Enqueue a job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None

    base_url = config.get("api.base_url")
    try:
        with JobCoreClient(base_url) as client:
            result = client.enqueue_job(
                type.upper(),
                payload_data,
                scheduled_at=scheduled_at,
                max_attempts=max_attempts,
                dedupe_key=dedupe_key,
            )
    except JobCoreError as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1) from None

    if result.get("deduplicated"):
        print_info(f"Existing job reused: {result.get('job_id')}")
    else:
        print_success(f"Enqueued {result.get('type')} on {result.get('queue')}: {result.get('job_id')}")


@app.command("retry")
def retry_job(job_id: str = typer.Argument(..., help="Failed job ID")):
    """🔁 Requeue a failed job with a fresh attempt budget"""
    base_url = config.get("api.base_url")

    try:
        with JobCoreClient(base_url) as client:
            job = client.retry_job(job_id)
    except JobCoreError as e:
        print_error(f"Failed to retry job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job.get('id')} requeued ({job.get('status')})")


@app.command("queues")
def list_queues():
    """🗂️ Show the queue family catalog"""
    base_url = config.get("api.base_url")

    try:
        with JobCoreClient(base_url) as client:
            families = client.list_queues()
    except JobCoreError as e:
        print_error(f"Failed to list queues: {e}")
        raise typer.Exit(1) from None

    for family in families:
        console.print(
            f"[bold cyan]{family['queue']}[/bold cyan] "
            f"priority={family['priority']} limit={family['concurrency_limit']} "
            f"timeout={family['timeout_s']}s attempts={family['max_attempts']}\n"
            f"  [dim]{family['description']}[/dim]\n"
            f"  {', '.join(family['job_types'])}"
        )


@app.command("cleanup")
def cleanup_jobs(
    older_than_days: int = typer.Option(30, "--older-than-days", "-d", help="Retention window"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🧹 Delete succeeded/failed jobs older than the retention window"""
    if not yes and not typer.confirm(
        f"Delete terminal jobs older than {older_than_days} days?"
    ):
        console.print("Cleanup cancelled.")
        return

    base_url = config.get("api.base_url")
    try:
        with JobCoreClient(base_url) as client:
            result = client.cleanup_jobs(older_than_days)
    except JobCoreError as e:
        print_error(f"Failed to clean up jobs: {e}")
        raise typer.Exit(1) from None

    print_success(f"Deleted {result.get('deleted_count', 0)} jobs")
