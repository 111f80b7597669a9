"""Configuration commands for deploykit CLI."""

from __future__ import annotations

from pathlib import Path

import click
import typer
from rich.table import Table

from deploykit.cli.utils import console, load_config
from deploykit.deployment.config_manager import ConfigManager

app = typer.Typer()

_SECRET_FIELDS = {"docker_password", "slack_webhook_url", "redis_password"}


@app.command("template")
def template(
    root: Path | None = typer.Option(None, "--root", help="Project root directory"),
) -> None:
    """Write .env.example listing every configuration key."""
    obj = click.get_current_context().obj or {}
    path = ConfigManager().generate_env_template(root or obj.get("root") or Path("."))
    console.print(f"[green]Created[/green] {path}")


@app.command("show")
def show() -> None:
    """Print the resolved configuration with secrets masked."""
    config = load_config()
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Setting")
    table.add_column("Value")
    for name, value in config.model_dump().items():
        if name in _SECRET_FIELDS and value:
            value = "********"
        table.add_row(name, str(value))
    console.print(table)
