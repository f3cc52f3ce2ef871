"""Configuration Commands - CLI settings management"""

from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from ..utils.config_manager import config
from ..utils.formatting import print_error, print_info, print_success

console = Console()
app = typer.Typer(name="config", help="CLI configuration management")

# Keys whose values are stored as integers
INTEGER_KEYS = {"api.timeout", "display.jobs_per_page"}


def _coerce(key: str, value: str) -> Any:
    if key == "api.base_url" and not value.startswith(("http://", "https://")):
        raise ValueError("API base URL must start with http:// or https://")
    if key in INTEGER_KEYS:
        if not value.isdigit() or int(value) < 1:
            raise ValueError(f"{key} must be a positive integer")
        return int(value)
    return value


@app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key (e.g., 'api.base_url')"),
    value: str = typer.Argument(..., help="Configuration value"),
):
    """⚙️ Set a configuration value"""
    try:
        coerced = _coerce(key, value)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1) from None

    try:
        config.set(key, coerced)
    except OSError as e:
        print_error(f"Failed to write configuration: {e}")
        raise typer.Exit(1) from None

    print_success(f"Set {key} = {coerced}")
    if key == "api.base_url":
        print_info("Test connection with: jobcore status")


@app.command("get")
def get_config(
    key: str | None = typer.Argument(
        None, help="Configuration key (optional - shows all if omitted)"
    ),
):
    """📋 Get configuration value(s)"""
    if not key:
        show_all_config()
        return

    value = config.get(key)
    if value is None:
        console.print(f"[yellow]Key '{key}' not found[/yellow]")
        console.print("Use [cyan]jobcore config show[/cyan] to see all available keys")
        raise typer.Exit(1)
    console.print(f"[cyan]{key}[/cyan] = [yellow]{value}[/yellow]")


@app.command("show")
def show_all_config():
    """📊 Show all configuration settings"""
    console.print(
        Panel(
            "[bold cyan]JobCore CLI Configuration[/bold cyan]\n\n"
            f"[dim]Stored in {config.config_file}[/dim]",
            title="Configuration",
            border_style="blue",
        )
    )
    _display_config_section(config.load_config(), "")


@app.command("reset")
def reset_config(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🔄 Reset configuration to defaults"""
    if not yes and not Confirm.ask("⚠️ Reset ALL configuration to defaults?"):
        console.print("Configuration reset cancelled.")
        return

    try:
        config.reset()
    except OSError as e:
        print_error(f"Failed to reset configuration: {e}")
        raise typer.Exit(1) from None
    print_success("Configuration reset to defaults")


@app.command("path")
def show_config_path():
    """📁 Show configuration file path"""
    console.print(f"Configuration file: [cyan]{config.config_file}[/cyan]")
    if not config.config_file.exists():
        console.print("[dim]Configuration file will be created on first `config set`[/dim]")


def _display_config_section(data: dict[str, Any], prefix: str, indent: int = 0):
    indent_str = "  " * indent

    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            console.print(f"{indent_str}[bold blue]{key}:[/bold blue]")
            _display_config_section(value, full_key, indent + 1)
        elif isinstance(value, int | float):
            console.print(f"{indent_str}[cyan]{key}[/cyan]: [cyan]{value}[/cyan]")
        elif isinstance(value, str) and value.startswith("http"):
            console.print(f"{indent_str}[cyan]{key}[/cyan]: [blue]{value}[/blue]")
        else:
            console.print(f"{indent_str}[cyan]{key}[/cyan]: [yellow]{value}[/yellow]")
