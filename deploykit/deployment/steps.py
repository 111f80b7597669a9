"""The deployment steps, in pipeline order."""

from __future__ import annotations

import logging
import shlex
import shutil
import socket
import time
from pathlib import Path

import psutil

from deploykit.deployment.config_manager import DeployConfig
from deploykit.health.evaluator import HealthEvaluator
from deploykit.health.probes import (
    DiskSpaceProbe,
    HttpProbe,
    MemoryProbe,
    Probe,
    ServiceCommandProbe,
    SslCertificateProbe,
)
from deploykit.health.smoke import run_smoke_tests
from deploykit.pipeline.step import Outcome, StepDescriptor
from deploykit.runtime.compose import ComposeRuntime

logger = logging.getLogger(__name__)

REQUIRED_PORTS = (80, 443, 3000, 5432, 6379)
MIN_FREE_MEMORY_MB = 1024
PUSH_RETRY_DELAY = 5.0
STOP_TIMEOUT = 30


def readiness_probes(config: DeployConfig, runtime: ComposeRuntime) -> list[Probe]:
    """App, database and cache probes gating a deployment."""
    redis_cmd = ["redis-cli"]
    if config.redis_password:
        redis_cmd += ["-a", config.redis_password]
    redis_cmd.append("ping")

    return [
        HttpProbe(config.health_url, name="app"),
        ServiceCommandProbe(
            "database", runtime, config.db_service,
            ["pg_isready", "-U", config.postgres_user],
        ),
        ServiceCommandProbe("redis", runtime, config.redis_service, redis_cmd, expect="PONG"),
    ]


def report_probes(config: DeployConfig, runtime: ComposeRuntime) -> list[Probe]:
    """Readiness probes plus host resources and certificate."""
    return readiness_probes(config, runtime) + [
        DiskSpaceProbe("/", threshold=config.disk_threshold),
        MemoryProbe(threshold=config.memory_threshold),
        SslCertificateProbe(config.domain),
    ]


class DeploymentSteps:
    """Build the ordered :class:`StepDescriptor` list for a deployment.

    Parameters
    ----------
    config:
        Resolved deployment configuration.
    runtime:
        Container runtime the steps drive.
    evaluator:
        Health evaluator used by the ``health_check`` step.
    """

    def __init__(
        self,
        config: DeployConfig,
        runtime: ComposeRuntime,
        evaluator: HealthEvaluator | None = None,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.evaluator = evaluator or HealthEvaluator()

    def descriptors(self) -> list[StepDescriptor]:
        cfg = self.config
        return [
            StepDescriptor("check_prerequisites", self.check_prerequisites),
            StepDescriptor("build_image", self.build_image),
            StepDescriptor(
                "push_image", self.push_image,
                max_attempts=cfg.max_retries, retry_delay=PUSH_RETRY_DELAY,
            ),
            StepDescriptor(
                "run_migrations", self.run_migrations,
                max_attempts=cfg.migration_retries, retry_delay=cfg.migration_retry_delay,
            ),
            StepDescriptor("deploy_application", self.deploy_application),
            StepDescriptor("health_check", self.health_check),
            StepDescriptor("cleanup", self.cleanup),
        ]

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def check_prerequisites(self) -> Outcome:
        """Tools on PATH, free disk and memory, busy ports."""
        missing = [tool for tool in self.config.required_tools if shutil.which(tool) is None]
        if "docker" in self.config.required_tools and "docker" not in missing:
            logger.info("Docker %s", self.runtime.version())

        for port in REQUIRED_PORTS:
            if _port_in_use(port):
                logger.warning("Port %d is in use", port)

        usage = shutil.disk_usage(self.config.root_dir)
        disk_percent = usage.used * 100 / usage.total if usage.total else 0.0
        if disk_percent > self.config.disk_threshold:
            return Outcome.failure(
                f"Disk usage is above {self.config.disk_threshold:.0f}% ({disk_percent:.0f}%)"
            )

        free_mb = psutil.virtual_memory().available // (1024 * 1024)
        if free_mb < MIN_FREE_MEMORY_MB:
            logger.warning("Low memory available: %dMB", free_mb)

        if missing:
            return Outcome.failure(f"Missing dependencies: {' '.join(missing)}")
        return Outcome.success()

    def build_image(self) -> Outcome:
        cfg = self.config
        dockerfile, target = cfg.dockerfile, None
        if cfg.environment == "development":
            dockerfile, target = cfg.dev_dockerfile, "development"

        ref = self.runtime.build_image(
            tags=[cfg.image_ref(cfg.git_sha), cfg.image_ref("latest")],
            dockerfile=dockerfile,
            build_args={"ENVIRONMENT": cfg.environment, "GITHUB_SHA": cfg.git_sha},
            cache_from=cfg.image_ref("latest"),
            target=target,
        )
        self.runtime.scan_image(ref)
        return Outcome.success()

    def push_image(self) -> Outcome:
        """Push both tags; only production deployments publish images."""
        cfg = self.config
        if not cfg.is_production:
            logger.info("Skipping registry push for %s", cfg.environment)
            return Outcome.success()

        if cfg.docker_username and cfg.docker_password:
            self.runtime.login(cfg.docker_registry, cfg.docker_username, cfg.docker_password)
        self.runtime.push_image(cfg.image_ref(cfg.git_sha))
        self.runtime.push_image(cfg.image_ref("latest"))
        return Outcome.success()

    def run_migrations(self) -> Outcome:
        result = self.runtime.run_in_service(
            self.config.app_service, shlex.split(self.config.migrate_command),
        )
        if result.ok:
            logger.info("Migrations completed successfully")
            return Outcome.success()
        tail = (result.stderr or result.stdout).strip().splitlines()[-1:]
        return Outcome.failure(
            f"migration exited with {result.exit_code}"
            + (f": {tail[0]}" if tail else "")
        )

    def deploy_application(self) -> Outcome:
        self.runtime.bring_down(timeout=STOP_TIMEOUT)
        self.runtime.pull()
        self.runtime.bring_up(
            scale={self.config.app_service: self.config.app_scale},
            force_recreate=True,
            remove_orphans=True,
        )
        return Outcome.success()

    def health_check(self) -> Outcome:
        cfg = self.config
        report = self.evaluator.evaluate(
            readiness_probes(cfg, self.runtime),
            timeout=cfg.health_check_timeout,
            poll_interval=cfg.health_poll_interval,
        )
        if not report.healthy:
            return Outcome.failure(f"Health check failed: {report.summary()}")

        if cfg.skip_tests:
            logger.info("Skipping smoke tests")
        else:
            run_smoke_tests(cfg.app_url, cfg.smoke_endpoints, health_path=cfg.health_path)
        return Outcome.success()

    def cleanup(self) -> Outcome:
        self.runtime.prune_images(until="24h")
        self.runtime.prune_containers()
        self.runtime.prune_volumes()
        removed = remove_old_logs(self.config.logs_dir, self.config.log_retention_days)
        logger.info("Cleanup completed (%d old log file(s) removed)", removed)
        return Outcome.success()


def remove_old_logs(logs_dir: Path, max_age_days: float) -> int:
    """Delete ``*.log`` files older than *max_age_days*."""
    if not logs_dir.is_dir():
        return 0
    cutoff = time.time() - max_age_days * 86400
    removed = 0
    for path in logs_dir.glob("*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError:
            logger.debug("Could not remove %s", path, exc_info=True)
    return removed


def _port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.5)
        return sock.connect_ex((host, port)) == 0
