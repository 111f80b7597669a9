"""deploy command for deploykit CLI."""

from __future__ import annotations

from pathlib import Path

import click
import typer

from deploykit.cli.utils import (
    EXIT_FAILED,
    EXIT_LOCKED,
    console,
    deploy_log_path,
    load_config,
    setup_logging,
)
from deploykit.deployment.deployer import Deployer
from deploykit.pipeline.run import PipelineRun


def deploy(
    environment: str | None = typer.Option(
        None, "--env", "-e", help="Target environment (production|staging|development)"
    ),
    app_name: str | None = typer.Option(None, "--app", "-a", help="Application name"),
    sha: str | None = typer.Option(None, "--sha", help="Commit SHA used as image tag"),
    skip_backup: bool = typer.Option(False, "--skip-backup", help="Do not snapshot before deploying"),
    skip_tests: bool = typer.Option(False, "--skip-tests", help="Skip post-deploy smoke tests"),
    root: Path | None = typer.Option(None, "--root", help="Project root directory"),
) -> None:
    """Build, ship and verify the application; roll back on failure."""
    config = load_config(
        environment,
        root,
        overrides={
            "app_name": app_name,
            "git_sha": sha,
            "skip_backup": skip_backup or None,
            "skip_tests": skip_tests or None,
        },
    )
    obj = click.get_current_context().obj or {}
    log_file = deploy_log_path(config)
    setup_logging("DEBUG" if obj.get("verbose") else config.log_level, log_file)

    console.print(
        f"[bold blue]Deploying[/bold blue] {config.app_name} "
        f"to [bold]{config.environment}[/bold] (sha {config.git_sha})"
    )
    deployer = Deployer(config)
    try:
        run = deployer.deploy()
    finally:
        deployer.close()

    _print_run(run)
    console.print(f"Log file: {log_file}")
    if run.lock_contention:
        raise typer.Exit(EXIT_LOCKED)
    if not run.succeeded:
        raise typer.Exit(EXIT_FAILED)


def _print_run(run: PipelineRun) -> None:
    if run.succeeded:
        console.print(f"[green]Deployment {run.id} completed successfully[/green]")
        return
    if run.lock_contention:
        console.print(f"[yellow]{run.failure_reason}[/yellow]")
        return

    console.print(f"[red]Deployment {run.id} failed at step: {run.failure_step}[/red]")
    if run.failure_reason:
        console.print(f"  reason: {run.failure_reason}")
    if run.restore is not None:
        colour = "green" if run.restore.ok else "red"
        console.print(
            f"  rollback: [{colour}]{run.restore.status.value}[/{colour}]"
            + (f" ({run.restore.snapshot_id})" if run.restore.snapshot_id else "")
        )
        for line in run.restore.detail:
            console.print(f"    - {line}")
