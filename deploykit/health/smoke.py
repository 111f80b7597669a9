"""Smoke tests run after a successful health check."""

from __future__ import annotations

import logging
from typing import Sequence

import requests
from pydantic import BaseModel, Field

from deploykit.health.evaluator import HealthCheckResult

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = ("/api/health", "/api/status", "/", "/api/users/me")


class SmokeReport(BaseModel):
    """Endpoint results plus the health endpoint response time."""

    results: list[HealthCheckResult] = Field(default_factory=list)
    response_time: float | None = None
    slow: bool = False

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.healthy)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.healthy)


def run_smoke_tests(
    base_url: str,
    endpoints: Sequence[str] = DEFAULT_ENDPOINTS,
    health_path: str = "/api/health",
    timeout: float = 10,
    slow_threshold: float = 1.0,
) -> SmokeReport:
    """GET every endpoint; any status below 400 passes.

    Results are informational; the report never raises.
    """
    base = base_url.rstrip("/")
    report = SmokeReport()

    for endpoint in endpoints:
        url = f"{base}{endpoint}"
        try:
            resp = requests.get(url, timeout=timeout)
        except requests.RequestException as exc:
            report.results.append(HealthCheckResult(
                check_name=endpoint, healthy=False, detail=f"unreachable: {exc}",
            ))
            logger.warning("  smoke %s: unreachable", endpoint)
            continue
        ok = resp.status_code < 400
        report.results.append(HealthCheckResult(
            check_name=endpoint,
            healthy=ok,
            latency=resp.elapsed.total_seconds(),
            detail=f"HTTP {resp.status_code}",
        ))
        logger.info("  smoke %s: HTTP %s", endpoint, resp.status_code)

    try:
        resp = requests.get(f"{base}{health_path}", timeout=timeout)
        report.response_time = resp.elapsed.total_seconds()
        report.slow = report.response_time >= slow_threshold
    except requests.RequestException as exc:
        logger.warning("Response time check failed: %s", exc)

    if report.slow:
        logger.warning("Response time: %.3fs (slow)", report.response_time)
    elif report.response_time is not None:
        logger.info("Response time: %.3fs", report.response_time)
    logger.info("Test results: %d passed, %d failed", report.passed, report.failed)
    return report
