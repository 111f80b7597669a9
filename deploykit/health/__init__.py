"""Readiness probing, smoke tests and health reports."""

from deploykit.health.evaluator import (
    CancellationToken,
    HealthCheckResult,
    HealthEvaluator,
    HealthReport,
)
from deploykit.health.probes import (
    DiskSpaceProbe,
    FunctionProbe,
    HttpProbe,
    MemoryProbe,
    Probe,
    ServiceCommandProbe,
    SslCertificateProbe,
)
from deploykit.health.report import report_payload, write_report
from deploykit.health.smoke import SmokeReport, run_smoke_tests

__all__ = [
    "CancellationToken",
    "DiskSpaceProbe",
    "FunctionProbe",
    "HealthCheckResult",
    "HealthEvaluator",
    "HealthReport",
    "HttpProbe",
    "MemoryProbe",
    "Probe",
    "ServiceCommandProbe",
    "SmokeReport",
    "SslCertificateProbe",
    "report_payload",
    "run_smoke_tests",
    "write_report",
]
