"""JobCore CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import JobCoreClient, JobCoreError
from .commands import budget, config, jobs, worker
from .utils.config_manager import config as config_manager
from .utils.formatting import ACTION_STYLES, print_error, print_info

console = Console()

app = typer.Typer(
    name="jobcore",
    help="⚙️ JobCore - Delayed job orchestration CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(budget.app, name="budget")
app.add_typer(worker.app, name="worker")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API, dispatcher and budget health"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with JobCoreClient(base_url) as client:
            health = client.health_check()
    except JobCoreError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the JobCore API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"Update the API URL with:\n"
                f"[cyan]jobcore config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    dispatcher = health.get("dispatcher") or {}
    budget_info = health.get("budget") or {}
    action = budget_info.get("action", "unknown")
    action_style = ACTION_STYLES.get(action, "white")
    ok = health.get("ok", False)

    console.print(
        Panel(
            f"{'🚀 [green]Healthy' if ok else '⚠️ [red]Degraded'}[/]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Queue depth: [cyan]{dispatcher.get('queue_depth', '?')}[/cyan]\n"
            f"• Active workers: [cyan]{dispatcher.get('active_workers', '?')}[/cyan] "
            f"(stale leases: {dispatcher.get('stale_leases', '?')})\n"
            f"• Budget: [{action_style}]{action}[/{action_style}] "
            f"{budget_info.get('percent_used', '?')}% used\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if ok else "red",
        )
    )


@app.command()
def alerts(
    kind: str | None = typer.Option(None, "--kind", "-k", help="e.g. job.failed"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of alerts"),
):
    """🚨 Show recent operator alerts"""
    base_url = config_manager.get("api.base_url")

    try:
        with JobCoreClient(base_url) as client:
            recent = client.recent_alerts(kind, limit)
    except JobCoreError as e:
        print_error(f"Failed to get alerts: {e}")
        raise typer.Exit(1) from None

    if not recent:
        console.print("[green]No alerts[/green]")
        return
    for alert in recent:
        console.print(
            f"[dim]{alert['raised_at']}[/dim] [bold]{alert['level']}[/bold] "
            f"{alert['kind']}: {alert['message']}"
        )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"⚙️ [bold cyan]JobCore CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.command()
def quickstart():
    """🚀 Quick start guide"""
    console.print(
        Panel(
            "⚙️ [bold cyan]JobCore Quick Start[/bold cyan]\n\n"
            "[bold]1. Check Status[/bold]\n"
            "   [dim]jobcore status[/dim]\n\n"
            "[bold]2. Inspect Queue Families[/bold]\n"
            "   [dim]jobcore jobs queues[/dim]\n\n"
            "[bold]3. Enqueue a Rollup[/bold]\n"
            "   [dim]jobcore jobs enqueue CLICK_ROLLUP[/dim]\n\n"
            "[bold]4. Run Due Jobs[/bold]\n"
            "   [dim]jobcore worker drain[/dim]\n\n"
            "[bold]5. Watch the Budget[/bold]\n"
            "   [dim]jobcore budget show[/dim]\n\n"
            "[bold yellow]Tip:[/bold yellow] Use [cyan]--help[/cyan] with any command for more options!",
            title="Quick Start Guide",
            border_style="green",
        )
    )


def _print_version(value: bool | None):
    if value:
        from . import __version__

        console.print(f"JobCore CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=_print_version,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """
    ⚙️ JobCore CLI

    Inspect and manage delayed jobs, queue families and the AI budget.
    """


if __name__ == "__main__":
    app()
