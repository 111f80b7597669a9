"""Tests for the concrete deployment steps."""

from __future__ import annotations

import os
import time
from collections import namedtuple
from unittest.mock import MagicMock, patch

import pytest

from deploykit.deployment.config_manager import DeployConfig
from deploykit.deployment.steps import (
    DeploymentSteps,
    readiness_probes,
    remove_old_logs,
    report_probes,
)
from deploykit.health.evaluator import HealthCheckResult, HealthReport
from deploykit.runtime.compose import ComposeRuntime, ExecResult

Usage = namedtuple("Usage", "total used free")


def _config(tmp_path, **kwargs) -> DeployConfig:
    values = {"root_dir": tmp_path, "app_name": "shop", "git_sha": "abc123"}
    values.update(kwargs)
    return DeployConfig(**values)


def _runtime() -> MagicMock:
    runtime = MagicMock(spec=ComposeRuntime)
    runtime.build_image.side_effect = lambda tags, **kw: tags[0]
    runtime.run_in_service.return_value = ExecResult()
    return runtime


def _evaluator(healthy: bool) -> MagicMock:
    evaluator = MagicMock()
    evaluator.evaluate.return_value = HealthReport(
        healthy=healthy,
        results=[HealthCheckResult(check_name="app", healthy=healthy, detail="HTTP 502")],
    )
    return evaluator


# ── Descriptors ──────────────────────────────────────────────────────────────

class TestDescriptors:

    def test_order(self, tmp_path):
        steps = DeploymentSteps(_config(tmp_path), _runtime()).descriptors()
        assert [s.name for s in steps] == [
            "check_prerequisites",
            "build_image",
            "push_image",
            "run_migrations",
            "deploy_application",
            "health_check",
            "cleanup",
        ]

    def test_retry_settings(self, tmp_path):
        config = _config(tmp_path, max_retries=4, migration_retries=5, migration_retry_delay=5)
        steps = {s.name: s for s in DeploymentSteps(config, _runtime()).descriptors()}
        assert steps["push_image"].max_attempts == 4
        assert steps["run_migrations"].max_attempts == 5
        assert steps["run_migrations"].retry_delay == 5
        assert steps["build_image"].max_attempts == 1


# ── Individual steps ─────────────────────────────────────────────────────────

class TestSteps:

    def test_build_production_image(self, tmp_path):
        runtime = _runtime()
        assert DeploymentSteps(_config(tmp_path), runtime).build_image().ok
        kwargs = runtime.build_image.call_args.kwargs
        assert kwargs["tags"] == ["ghcr.io/shop:abc123", "ghcr.io/shop:latest"]
        assert kwargs["dockerfile"] == "docker/Dockerfile"
        assert kwargs["target"] is None
        assert kwargs["build_args"] == {"ENVIRONMENT": "production", "GITHUB_SHA": "abc123"}
        runtime.scan_image.assert_called_once_with("ghcr.io/shop:abc123")

    def test_build_development_image(self, tmp_path):
        runtime = _runtime()
        DeploymentSteps(_config(tmp_path, environment="development"), runtime).build_image()
        kwargs = runtime.build_image.call_args.kwargs
        assert kwargs["dockerfile"] == "docker/Dockerfile.dev"
        assert kwargs["target"] == "development"

    def test_push_skipped_outside_production(self, tmp_path):
        runtime = _runtime()
        assert DeploymentSteps(_config(tmp_path, environment="staging"), runtime).push_image().ok
        runtime.push_image.assert_not_called()

    def test_push_logs_in_with_credentials(self, tmp_path):
        runtime = _runtime()
        config = _config(tmp_path, docker_username="bot", docker_password="pw")
        assert DeploymentSteps(config, runtime).push_image().ok
        runtime.login.assert_called_once_with("ghcr.io", "bot", "pw")
        assert runtime.push_image.call_count == 2

    def test_push_error_propagates_for_retry(self, tmp_path):
        runtime = _runtime()
        runtime.push_image.side_effect = RuntimeError("registry unavailable")
        with pytest.raises(RuntimeError):
            DeploymentSteps(_config(tmp_path), runtime).push_image()

    def test_migrations(self, tmp_path):
        runtime = _runtime()
        assert DeploymentSteps(_config(tmp_path), runtime).run_migrations().ok
        runtime.run_in_service.assert_called_once_with(
            "app", ["npx", "prisma", "migrate", "deploy"],
        )

    def test_migration_failure_reason(self, tmp_path):
        runtime = _runtime()
        runtime.run_in_service.return_value = ExecResult(
            exit_code=1, stderr="P1001\nCan't reach database server\n",
        )
        outcome = DeploymentSteps(_config(tmp_path), runtime).run_migrations()
        assert not outcome.ok
        assert outcome.reason == "migration exited with 1: Can't reach database server"

    def test_deploy_application(self, tmp_path):
        runtime = _runtime()
        assert DeploymentSteps(_config(tmp_path, app_scale=2), runtime).deploy_application().ok
        runtime.bring_down.assert_called_once_with(timeout=30)
        runtime.pull.assert_called_once()
        runtime.bring_up.assert_called_once_with(
            scale={"app": 2}, force_recreate=True, remove_orphans=True,
        )

    def test_health_check_runs_smoke_tests(self, tmp_path):
        with patch("deploykit.deployment.steps.run_smoke_tests") as smoke:
            steps = DeploymentSteps(_config(tmp_path), _runtime(), _evaluator(True))
            assert steps.health_check().ok
            smoke.assert_called_once()

    def test_health_check_skip_tests(self, tmp_path):
        with patch("deploykit.deployment.steps.run_smoke_tests") as smoke:
            config = _config(tmp_path, skip_tests=True)
            assert DeploymentSteps(config, _runtime(), _evaluator(True)).health_check().ok
            smoke.assert_not_called()

    def test_health_check_failure(self, tmp_path):
        evaluator = _evaluator(False)
        config = _config(tmp_path, health_check_timeout=300, health_poll_interval=10)
        outcome = DeploymentSteps(config, _runtime(), evaluator).health_check()
        assert not outcome.ok
        assert "app: HTTP 502" in outcome.reason
        kwargs = evaluator.evaluate.call_args.kwargs
        assert kwargs["timeout"] == 300
        assert kwargs["poll_interval"] == 10

    def test_cleanup(self, tmp_path):
        runtime = _runtime()
        logs = tmp_path / "logs"
        logs.mkdir()
        old = logs / "deploy_old.log"
        old.write_text("x")
        stale = time.time() - 40 * 86400
        os.utime(old, (stale, stale))
        (logs / "deploy_new.log").write_text("y")

        assert DeploymentSteps(_config(tmp_path), runtime).cleanup().ok
        runtime.prune_images.assert_called_once_with(until="24h")
        runtime.prune_containers.assert_called_once()
        runtime.prune_volumes.assert_called_once()
        assert not old.exists()
        assert (logs / "deploy_new.log").exists()


# ── Prerequisites ────────────────────────────────────────────────────────────

class TestPrerequisites:

    def _run(self, tmp_path, which=lambda tool: f"/usr/bin/{tool}", disk=Usage(100, 50, 50)):
        runtime = _runtime()
        runtime.version.return_value = "24.0.7"
        memory = MagicMock(available=8 * 1024 ** 3)
        with patch("deploykit.deployment.steps.shutil.which", side_effect=which), \
                patch("deploykit.deployment.steps.shutil.disk_usage", return_value=disk), \
                patch("deploykit.deployment.steps.psutil.virtual_memory", return_value=memory), \
                patch("deploykit.deployment.steps._port_in_use", return_value=True):
            return DeploymentSteps(_config(tmp_path), runtime).check_prerequisites()

    def test_all_present(self, tmp_path):
        assert self._run(tmp_path).ok

    def test_missing_tool(self, tmp_path):
        outcome = self._run(tmp_path, which=lambda tool: None if tool == "docker-compose" else "/x")
        assert not outcome.ok
        assert outcome.reason == "Missing dependencies: docker-compose"

    def test_full_disk(self, tmp_path):
        outcome = self._run(tmp_path, disk=Usage(100, 95, 5))
        assert not outcome.ok
        assert "Disk usage" in outcome.reason


# ── Probe sets ───────────────────────────────────────────────────────────────

class TestProbeSets:

    def test_readiness_probes(self, tmp_path):
        probes = readiness_probes(_config(tmp_path, redis_password="pw"), _runtime())
        assert [p.name for p in probes] == ["app", "database", "redis"]
        assert probes[0].url == "http://localhost:3000/api/health"
        assert probes[2].command == ["redis-cli", "-a", "pw", "ping"]

    def test_report_probes_add_host_checks(self, tmp_path):
        probes = report_probes(_config(tmp_path), _runtime())
        assert [p.name for p in probes] == ["app", "database", "redis", "disk", "memory", "ssl"]

    def test_remove_old_logs_missing_dir(self, tmp_path):
        assert remove_old_logs(tmp_path / "nope", 30) == 0
