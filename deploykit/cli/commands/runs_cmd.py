"""Run history commands for deploykit CLI."""

from __future__ import annotations

import typer
from rich.table import Table

from deploykit.cli.utils import EXIT_FAILED, console, load_config
from deploykit.pipeline.history import RunHistory
from deploykit.pipeline.locking import LockManager

app = typer.Typer()


@app.command("list")
def list_runs(
    limit: int = typer.Option(20, "--limit", help="Number of runs to show"),
    all_envs: bool = typer.Option(False, "--all", help="Include every environment"),
) -> None:
    """List recent deployment runs, newest first."""
    config = load_config()
    history = RunHistory(config.history_db)
    runs = history.recent(limit, environment=None if all_envs else config.environment)
    history.close()
    if not runs:
        console.print("[yellow]No runs recorded[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run ID")
    table.add_column("Environment")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Failed step")
    table.add_column("Rollback")
    for run in runs:
        table.add_row(
            run.id,
            run.environment,
            run.status.value,
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            run.failure_step or "",
            run.restore.status.value if run.restore else "",
        )
    console.print(table)


@app.command("show")
def show(run_id: str = typer.Argument(..., help="Run ID")) -> None:
    """Show one archived run."""
    config = load_config()
    history = RunHistory(config.history_db)
    run = history.get(run_id)
    history.close()
    if run is None:
        console.print(f"[red]Run {run_id} not found[/red]")
        raise typer.Exit(EXIT_FAILED)

    console.print(f"[bold]Run {run.id}[/bold] ({run.environment}): {run.status.value}")
    console.print(f"  state: {run.state.value}")
    console.print(f"  steps: {' -> '.join(run.step_names)}")
    console.print(f"  started: {run.started_at.isoformat()}")
    if run.finished_at is not None:
        console.print(f"  finished: {run.finished_at.isoformat()} ({run.duration_seconds:.1f}s)")
    if run.snapshot_id:
        console.print(f"  snapshot: {run.snapshot_id}")
    if run.failure_step or run.failure_reason:
        console.print(f"  failed at: {run.failure_step or '-'}: {run.failure_reason or ''}")
    if run.lock_contention:
        console.print(f"  lock held by: {run.lock_holder}")
    if run.restore is not None:
        console.print(f"  rollback: {run.restore.status.value}")
        for line in run.restore.detail:
            console.print(f"    - {line}")


@app.command("lock")
def lock() -> None:
    """Show who holds the deployment lock."""
    config = load_config()
    manager = LockManager(config.lock_path)
    record = manager.peek()
    if record is None:
        console.print("No deployment in progress")
        return
    state = "live" if manager.is_live(record.holder_id) else "stale"
    console.print(
        f"Lock {config.lock_path} held by {record.holder_id} on {record.hostname} "
        f"since {record.acquired_at.isoformat()} ({state})"
    )
