"""Health commands for deploykit CLI."""

from __future__ import annotations

import signal

import typer
from rich.table import Table

from deploykit.cli.utils import EXIT_FAILED, console, load_config
from deploykit.deployment.deployer import Deployer
from deploykit.deployment.steps import readiness_probes
from deploykit.health.evaluator import CancellationToken, HealthEvaluator, HealthReport
from deploykit.health.probes import HttpProbe

app = typer.Typer()


def _render(report: HealthReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Detail")
    for result in report.results:
        status = "[green]passed[/green]" if result.healthy else "[red]failed[/red]"
        table.add_row(result.check_name, status, f"{result.latency * 1000:.0f}ms", result.detail)
    console.print(table)
    console.print(f"Total: {report.passed} passed, {report.failed} failed")


@app.command("check")
def check(
    url: str | None = typer.Argument(None, help="Health URL (default: configured app)"),
) -> None:
    """Run the readiness probes once."""
    config = load_config()
    if url:
        probes = [HttpProbe(url)]
    else:
        deployer = Deployer(config)
        probes = readiness_probes(config, deployer.runtime)
        deployer.close()

    results = HealthEvaluator().run_round(probes)
    report = HealthReport(healthy=all(r.healthy for r in results), rounds=1, results=results)
    _render(report)
    if not report.healthy:
        raise typer.Exit(EXIT_FAILED)


@app.command("report")
def report() -> None:
    """Run every check once and save a JSON health report."""
    deployer = Deployer(load_config())
    try:
        result, path = deployer.health_report()
    finally:
        deployer.close()
    _render(result)
    console.print(f"Report saved to: {path}")
    if not result.healthy:
        raise typer.Exit(EXIT_FAILED)


@app.command("monitor")
def monitor(
    interval: float | None = typer.Option(None, "--interval", "-i", help="Seconds between rounds"),
) -> None:
    """Check continuously until interrupted with Ctrl+C."""
    overrides = {"health_poll_interval": interval} if interval is not None else None
    deployer = Deployer(load_config(overrides=overrides))
    cancel = CancellationToken()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())
    console.print("[cyan]Monitoring... press Ctrl+C to stop[/cyan]")
    try:
        deployer.monitor(cancel, on_round=_render)
    finally:
        signal.signal(signal.SIGINT, previous)
        deployer.close()
    console.print("Monitoring stopped")
