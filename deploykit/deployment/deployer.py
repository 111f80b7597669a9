"""Deployer — wires one DeployConfig into a runnable pipeline."""

from __future__ import annotations

import logging
import os
import shlex
from datetime import timedelta
from pathlib import Path
from typing import Callable, Sequence

from deploykit.backup.manager import BackupManager, RestoreResult, RestoreStatus, Snapshot
from deploykit.deployment.config_manager import DeployConfig
from deploykit.deployment.steps import DeploymentSteps, report_probes
from deploykit.health.evaluator import CancellationToken, HealthEvaluator, HealthReport
from deploykit.health.report import write_report
from deploykit.notify.gateway import NotifierGateway
from deploykit.notify.providers import EmailNotifier, SlackNotifier
from deploykit.pipeline.engine import PipelineEngine
from deploykit.pipeline.executor import StepExecutor
from deploykit.pipeline.history import RunHistory
from deploykit.pipeline.locking import LockManager
from deploykit.pipeline.run import PipelineRun
from deploykit.pipeline.step import StepDescriptor
from deploykit.runtime.compose import ComposeRuntime

logger = logging.getLogger(__name__)


class Deployer:
    """Deploy, roll back and inspect one application environment.

    Every collaborator is built from *config* unless passed in.
    """

    def __init__(
        self,
        config: DeployConfig,
        runtime: ComposeRuntime | None = None,
        notifier: NotifierGateway | None = None,
        history: RunHistory | None = None,
        lock_manager: LockManager | None = None,
        backup_manager: BackupManager | None = None,
        executor: StepExecutor | None = None,
        evaluator: HealthEvaluator | None = None,
        steps: Sequence[StepDescriptor] | None = None,
    ) -> None:
        self.config = config
        self.runtime = runtime or ComposeRuntime(
            config.root_dir,
            compose_file=config.compose_file,
            compose_command=shlex.split(config.compose_command),
        )
        if history is None:
            config.logs_dir.mkdir(parents=True, exist_ok=True)
            history = RunHistory(config.history_db)
        self.history = history
        self.notifier = notifier or self._build_notifier()
        self.lock_manager = lock_manager or LockManager(config.lock_path)
        self.backup_manager = backup_manager or self._build_backup_manager()
        self.evaluator = evaluator or HealthEvaluator()
        self._steps = list(steps) if steps is not None else None
        self.engine = PipelineEngine(
            self.lock_manager,
            self.backup_manager,
            self.notifier,
            executor=executor,
            history=self.history,
        )

    def steps(self) -> list[StepDescriptor]:
        if self._steps is not None:
            return list(self._steps)
        return DeploymentSteps(self.config, self.runtime, self.evaluator).descriptors()

    def deploy(self) -> PipelineRun:
        """Run the full pipeline and return the terminal run."""
        cfg = self.config
        logger.info(
            "Deploying %s to %s (sha %s)", cfg.app_name, cfg.environment, cfg.git_sha,
        )
        run_id = self.engine.start(
            cfg.environment, self.steps(), take_snapshot=not cfg.skip_backup,
        )
        return self.engine.status(run_id)

    def rollback(self, snapshot_id: str | None = None) -> RestoreResult:
        """Restore *snapshot_id*, or the latest snapshot, under the deployment lock.

        Raises
        ------
        LockContentionError
            If a deployment is in progress.
        """
        with self.lock_manager.held(str(os.getpid())):
            target: Snapshot | None = None
            if snapshot_id is not None:
                target = self.backup_manager.get(snapshot_id)
                if target is None:
                    logger.error("Backup %s not found", snapshot_id)
                    return RestoreResult(
                        status=RestoreStatus.NO_SNAPSHOT,
                        snapshot_id=snapshot_id,
                        detail=[f"unknown snapshot: {snapshot_id}"],
                    )
            return self.backup_manager.restore(target)

    def backup(self) -> Snapshot:
        """Take a snapshot outside a deployment, under the deployment lock.

        The snapshot prunes expired backups, so it must not overlap a
        restore running in another process.

        Raises
        ------
        LockContentionError
            If a deployment or restore is in progress.
        """
        with self.lock_manager.held(str(os.getpid())):
            return self.backup_manager.snapshot()

    def prune_backups(self, max_age: timedelta | None = None) -> int:
        """Apply backup retention under the deployment lock."""
        with self.lock_manager.held(str(os.getpid())):
            return self.backup_manager.prune(max_age=max_age, keep=self.protected_snapshots())

    def health_report(self, directory: str | Path | None = None) -> tuple[HealthReport, Path]:
        """Run every report probe once and write the JSON report."""
        results = self.evaluator.run_round(report_probes(self.config, self.runtime))
        report = HealthReport(healthy=all(r.healthy for r in results), rounds=1, results=results)
        path = write_report(report, directory or self.config.logs_dir)
        return report, path

    def monitor(
        self,
        cancel: CancellationToken,
        on_round: Callable[[HealthReport], None] | None = None,
    ) -> HealthReport | None:
        return self.evaluator.monitor(
            report_probes(self.config, self.runtime),
            poll_interval=self.config.health_poll_interval,
            cancel=cancel,
            on_round=on_round,
        )

    def close(self) -> None:
        self.history.close()

    # -- Wiring -----------------------------------------------------------------

    def _build_notifier(self) -> NotifierGateway:
        cfg = self.config
        providers = []
        if cfg.slack_webhook_url:
            providers.append(SlackNotifier(cfg.slack_webhook_url))
        if cfg.alert_email:
            providers.append(EmailNotifier(cfg.alert_email, smtp_host=cfg.smtp_host))
        return NotifierGateway(
            providers,
            app_name=cfg.app_name,
            environment=cfg.environment,
            sha=cfg.git_sha,
        )

    def _build_backup_manager(self) -> BackupManager:
        cfg = self.config
        database_dump = None
        if cfg.backup_database:
            database_dump = (
                cfg.db_service,
                ["pg_dump", "-U", cfg.postgres_user, cfg.postgres_db],
            )
        return BackupManager(
            cfg.backups_dir,
            cfg.root_dir,
            runtime=self.runtime,
            app_volume=cfg.app_volume,
            database_dump=database_dump,
            retention_days=cfg.backup_retention_days,
            protected=self.protected_snapshots,
        )

    def protected_snapshots(self) -> set[str]:
        """Ids retention must keep: the snapshot taken by the last failed run."""
        failed = self.history.last_failed(self.config.environment)
        if failed is not None and failed.snapshot_id:
            return {failed.snapshot_id}
        return set()
