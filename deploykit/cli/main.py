"""deploykit CLI - main entrypoint."""

from __future__ import annotations

from pathlib import Path

import typer

from deploykit import __version__
from deploykit.cli.commands import backups_cmd, config_cmd, deploy_cmd, health_cmd, runs_cmd
from deploykit.cli.utils import console

app = typer.Typer(
    name="deploykit",
    help="Resilient container deployments with backup and automatic rollback.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)

app.command("deploy")(deploy_cmd.deploy)
app.add_typer(health_cmd.app, name="health", help="Health checks and monitoring")
app.add_typer(backups_cmd.app, name="backups", help="Manage deployment backups")
app.add_typer(runs_cmd.app, name="runs", help="Inspect deployment runs and the lock")
app.add_typer(config_cmd.app, name="config", help="Configuration management")


def _show_version(value: bool) -> None:
    if value:
        console.print(f"[bold blue]deploykit[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def callback(
    ctx: typer.Context,
    root: Path = typer.Option(Path("."), "--root", "-r", help="Project root directory"),
    environment: str | None = typer.Option(
        None, "--env", "-e", help="Environment (production|staging|development)"
    ),
    verbose: bool = typer.Option(False, "-V", "--verbose", help="Enable debug logging"),
    version: bool = typer.Option(
        False, "--version", "-v", callback=_show_version, is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """deploykit - deploy, check and roll back containerised applications.

    Global options are stored on ``ctx.obj`` for subcommands.
    """
    if ctx.obj is None:
        ctx.obj = {}
    ctx.obj.update({"root": root, "environment": environment, "verbose": verbose})


def main() -> None:
    """Main CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
