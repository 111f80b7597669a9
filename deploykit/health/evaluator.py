"""HealthEvaluator — polls a set of readiness probes until healthy."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Sequence

from pydantic import BaseModel, Field

from deploykit.health.probes import Probe

logger = logging.getLogger(__name__)


class HealthCheckResult(BaseModel):
    """Result of one probe in one poll round."""

    check_name: str
    healthy: bool
    latency: float = 0.0  # seconds
    detail: str = ""


class HealthReport(BaseModel):
    """Aggregate of the last poll round."""

    healthy: bool
    rounds: int = 0
    elapsed: float = 0.0
    timed_out: bool = False
    cancelled: bool = False
    results: list[HealthCheckResult] = Field(default_factory=list)
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.healthy)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.healthy)

    def summary(self) -> str:
        return ", ".join(
            f"{r.check_name}: {'ok' if r.healthy else r.detail or 'down'}"
            for r in self.results
        )


class CancellationToken:
    """Cooperative cancellation flag shared with a running evaluation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class HealthEvaluator:
    """Run readiness probes and aggregate them with AND.

    Parameters
    ----------
    clock:
        Monotonic time source in seconds.
    sleep:
        Suspend function used between rounds when no cancellation token
        is supplied.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    def run_probe(self, probe: Probe) -> HealthCheckResult:
        """Run one probe; exceptions count as unhealthy."""
        started = self._clock()
        try:
            healthy, detail = probe.check()
        except Exception as exc:
            healthy, detail = False, f"{type(exc).__name__}: {exc}"
        return HealthCheckResult(
            check_name=probe.name,
            healthy=bool(healthy),
            latency=max(self._clock() - started, 0.0),
            detail=detail,
        )

    def run_round(self, checks: Sequence[Probe]) -> list[HealthCheckResult]:
        return [self.run_probe(probe) for probe in checks]

    def evaluate(
        self,
        checks: Sequence[Probe],
        timeout: float | None,
        poll_interval: float,
        cancel: CancellationToken | None = None,
    ) -> HealthReport:
        """Poll *checks* until all pass in one round.

        Stops early when *timeout* seconds have elapsed or *cancel* is
        set.  A ``None`` timeout polls until healthy or cancelled.
        """
        start = self._clock()
        rounds = 0
        while True:
            rounds += 1
            results = self.run_round(checks)
            elapsed = self._clock() - start
            healthy = all(r.healthy for r in results)
            report = HealthReport(
                healthy=healthy, rounds=rounds, elapsed=elapsed, results=results,
            )
            if healthy:
                logger.info("All services are healthy (round %d)", rounds)
                return report

            logger.info("Waiting for services to be healthy... %s", report.summary())
            if timeout is not None and elapsed >= timeout:
                logger.error("Health check failed after %.1fs", elapsed)
                return report.model_copy(update={"timed_out": True})
            if self._wait(poll_interval, cancel):
                return report.model_copy(update={"cancelled": True})

    def monitor(
        self,
        checks: Sequence[Probe],
        poll_interval: float,
        cancel: CancellationToken,
        on_round: Callable[[HealthReport], None] | None = None,
    ) -> HealthReport | None:
        """Evaluate *checks* every *poll_interval* seconds until cancelled.

        Returns the last report, or None if cancelled before the first
        round.
        """
        logger.info("Starting continuous monitoring")
        start = self._clock()
        report: HealthReport | None = None
        rounds = 0
        while not cancel.cancelled:
            rounds += 1
            results = self.run_round(checks)
            report = HealthReport(
                healthy=all(r.healthy for r in results),
                rounds=rounds,
                elapsed=self._clock() - start,
                results=results,
            )
            if on_round is not None:
                on_round(report)
            if cancel.wait(poll_interval):
                break
        logger.info("Monitoring stopped")
        return report

    def _wait(self, seconds: float, cancel: CancellationToken | None) -> bool:
        if cancel is not None:
            return cancel.wait(seconds)
        self._sleep(seconds)
        return False
