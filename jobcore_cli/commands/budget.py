"""Budget Commands - AI spend monitoring and limits"""

import typer
from rich.console import Console

from ..client.endpoints import JobCoreClient, JobCoreError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_budget_history_table,
    create_budget_panel,
    print_error,
    print_success,
)

console = Console()
app = typer.Typer(name="budget", help="AI budget status and limits")


@app.command("show")
def show_budget(
    provider: str | None = typer.Option(None, "--provider", help="AI provider"),
):
    """💰 Current month spend and throttle action"""
    base_url = config.get("api.base_url")

    try:
        with JobCoreClient(base_url) as client:
            budget = client.budget_status(provider)
    except JobCoreError as e:
        print_error(f"Failed to get budget: {e}")
        raise typer.Exit(1) from None

    console.print(create_budget_panel(budget))


@app.command("history")
def budget_history(
    provider: str | None = typer.Option(None, "--provider", help="AI provider"),
    months: int = typer.Option(12, "--months", "-m", help="Number of months"),
):
    """📅 Monthly spend history"""
    base_url = config.get("api.base_url")

    try:
        with JobCoreClient(base_url) as client:
            periods = client.budget_history(provider, months)
    except JobCoreError as e:
        print_error(f"Failed to get budget history: {e}")
        raise typer.Exit(1) from None

    if not periods:
        console.print("[yellow]No budget periods recorded yet[/yellow]")
        return
    console.print(create_budget_history_table(periods))


@app.command("set-limit")
def set_limit(
    dollars: float = typer.Argument(..., help="Monthly limit in dollars"),
    provider: str | None = typer.Option(None, "--provider", help="AI provider"),
):
    """🎚️ Set this month's budget limit"""
    if dollars < 0:
        print_error("Budget limit cannot be negative")
        raise typer.Exit(1)

    base_url = config.get("api.base_url")
    try:
        with JobCoreClient(base_url) as client:
            period = client.set_budget_limit(round(dollars * 100), provider)
    except JobCoreError as e:
        print_error(f"Failed to set budget limit: {e}")
        raise typer.Exit(1) from None

    print_success(
        f"Limit for {period.get('provider')} ({period.get('month')}) set to "
        f"${period.get('limit_cents', 0) / 100:,.2f}"
    )
