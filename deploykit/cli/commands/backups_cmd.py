"""Backup commands for deploykit CLI."""

from __future__ import annotations

from datetime import timedelta

import typer
from rich.table import Table

from deploykit.cli.utils import EXIT_FAILED, EXIT_LOCKED, console, load_config
from deploykit.deployment.deployer import Deployer
from deploykit.errors import LockContentionError

app = typer.Typer()


def _size(num: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if num < 1024:
            return f"{num:.0f}{unit}"
        num /= 1024
    return f"{num:.1f}TB"


@app.command("list")
def list_backups() -> None:
    """List stored snapshots, oldest first."""
    deployer = Deployer(load_config())
    snapshots = deployer.backup_manager.list_snapshots()
    deployer.close()
    if not snapshots:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID")
    table.add_column("Created")
    table.add_column("Size", justify="right")
    table.add_column("Artifacts")
    table.add_column("Errors")
    for snap in snapshots:
        table.add_row(
            snap.id,
            snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            _size(snap.size),
            ", ".join(snap.payload_refs),
            ", ".join(e.artifact for e in snap.errors),
        )
    console.print(table)


@app.command("create")
def create() -> None:
    """Take a snapshot now."""
    deployer = Deployer(load_config())
    try:
        snap = deployer.backup()
    except LockContentionError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(EXIT_LOCKED) from exc
    finally:
        deployer.close()
    console.print(f"[green]Backup created:[/green] {snap.id}")
    for failure in snap.errors:
        console.print(f"  [yellow]{failure.artifact}[/yellow]: {failure.detail}")


@app.command("restore")
def restore(
    snapshot_id: str | None = typer.Argument(None, help="Snapshot to restore (default: latest)"),
) -> None:
    """Restore a snapshot and restart the stack."""
    deployer = Deployer(load_config())
    try:
        result = deployer.rollback(snapshot_id)
    except LockContentionError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(EXIT_LOCKED) from exc
    finally:
        deployer.close()

    if result.ok:
        console.print(f"[green]Restored {result.snapshot_id}[/green]")
        return
    console.print(f"[red]Restore {result.status.value}[/red]")
    for line in result.detail:
        console.print(f"  - {line}")
    raise typer.Exit(EXIT_FAILED)


@app.command("prune")
def prune(
    days: float | None = typer.Option(None, "--days", help="Maximum age in days"),
) -> None:
    """Delete snapshots past retention."""
    deployer = Deployer(load_config())
    max_age = timedelta(days=days) if days is not None else None
    try:
        removed = deployer.prune_backups(max_age)
    except LockContentionError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(EXIT_LOCKED) from exc
    finally:
        deployer.close()
    console.print(f"Removed {removed} backup(s)")
