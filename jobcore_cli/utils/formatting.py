"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "queued": "yellow",
    "running": "blue",
    "succeeded": "green",
    "failed": "red",
}

ACTION_STYLES = {
    "NORMAL": "green",
    "REDUCE": "yellow",
    "QUEUE": "red",
    "HARD_STOP": "bold red",
}


def print_success(message: str):
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    console.print(f"[blue]ℹ {message}[/blue]")


def _styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Queue", justify="center")
    table.add_column("Status", justify="center")
    table.add_column("Attempt", justify="center", style="yellow")
    table.add_column("Next Attempt", justify="left")
    table.add_column("Last Error", justify="left", style="dim")

    for job in jobs:
        error = job.get("last_error") or "—"
        table.add_row(
            str(job.get("id", ""))[:8],
            job.get("type", ""),
            job.get("queue", ""),
            _styled_status(job.get("status", "")),
            f"{job.get('attempt', 0)}/{job.get('max_attempts', 0)}",
            str(job.get("next_attempt_at", "—"))[:19],
            error[:40] + "..." if len(error) > 40 else error,
        )

    return table


def create_queue_stats_table(stats: dict[str, Any]) -> Table:
    """Per-family status counts"""
    table = Table(title="Queue Families", box=box.ROUNDED)

    table.add_column("Queue", style="cyan")
    table.add_column("Priority", justify="center")
    table.add_column("Limit", justify="center")
    for status in STATUS_STYLES:
        table.add_column(status.capitalize(), justify="right", style=STATUS_STYLES[status])

    for queue in stats.get("queues", []):
        counts = queue.get("by_status", {})
        table.add_row(
            queue.get("queue", ""),
            str(queue.get("priority", "")),
            str(queue.get("concurrency_limit", "")),
            *(str(counts.get(status, 0)) for status in STATUS_STYLES),
        )

    return table


def create_budget_panel(budget: dict[str, Any]) -> Panel:
    """Current month budget summary"""
    action = budget.get("action", "NORMAL")
    style = ACTION_STYLES.get(action, "white")
    content = (
        f"• Provider: [cyan]{budget.get('provider', '')}[/cyan]\n"
        f"• Month: [blue]{budget.get('month', '')}[/blue]\n"
        f"• Spent: [yellow]${budget.get('spent_cents', 0) / 100:,.2f}[/yellow] "
        f"of ${budget.get('limit_cents', 0) / 100:,.2f} "
        f"([{style}]{budget.get('percent_used', 0):.1f}%[/{style}])\n"
        f"• Remaining: [green]${budget.get('remaining_cents', 0) / 100:,.2f}[/green]\n"
        f"• Action: [{style}]{action}[/{style}] (batch size {budget.get('batch_size', 0)})"
    )
    return Panel(content, title="AI Budget", border_style=style.split()[-1])


def create_budget_history_table(periods: list[dict[str, Any]]) -> Table:
    table = Table(title="Budget History", box=box.ROUNDED)

    table.add_column("Month", style="cyan")
    table.add_column("Spent", justify="right", style="yellow")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens In/Out", justify="right", style="dim")

    for period in periods:
        table.add_row(
            str(period.get("month", "")),
            f"${period.get('spent_cents', 0) / 100:,.2f}",
            f"${period.get('limit_cents', 0) / 100:,.2f}",
            f"{period.get('percent_used', 0):.1f}%",
            str(period.get("total_requests", 0)),
            f"{period.get('tokens_input', 0)}/{period.get('tokens_output', 0)}",
        )

    return table
