"""Health report files."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from deploykit.health.evaluator import HealthReport

logger = logging.getLogger(__name__)


def report_payload(report: HealthReport) -> dict[str, Any]:
    """Serialise a report to the JSON layout of the health report file."""
    return {
        "timestamp": report.timestamp,
        "healthy": report.healthy,
        "checks": [
            {
                "check": r.check_name,
                "status": "passed" if r.healthy else "failed",
                "latency_ms": round(r.latency * 1000),
                "detail": r.detail,
            }
            for r in report.results
        ],
    }


def write_report(report: HealthReport, directory: str | Path) -> Path:
    """Write ``health_report_<timestamp>.json`` into *directory*."""
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"health_report_{datetime.now():%Y%m%d_%H%M%S}.json"
    path.write_text(json.dumps(report_payload(report), indent=2), encoding="utf-8")
    logger.info("Report saved to: %s", path)
    return path
