"""PipelineEngine — sequential deployment with compensating rollback."""

from __future__ import annotations

import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable

from deploykit.backup.manager import BackupManager, RestoreResult, RestoreStatus
from deploykit.errors import LockContentionError
from deploykit.notify.gateway import DeployStatus, NotifierGateway
from deploykit.pipeline.executor import StepExecutor
from deploykit.pipeline.history import RunHistory
from deploykit.pipeline.locking import LockManager
from deploykit.pipeline.run import PipelineRun, PipelineState, RunStatus
from deploykit.pipeline.step import StepDescriptor

logger = logging.getLogger(__name__)


class PipelineEngine:
    """Run an ordered list of steps under the deployment lock.

    The engine is a linear state machine::

        IDLE -> LOCKING -> BACKING_UP -> RUNNING(i) -> SUCCEEDED
                                              \\-> FAILING -> ROLLING_BACK -> FAILED

    A busy lock ends the run as FAILED without rollback.  Backup
    problems never stop the run.  The first failed step triggers exactly
    one restore of the most recent snapshot and one FAILED notification;
    later steps never run.  The lock is released after the run reaches
    its terminal state on every exit path.

    Parameters
    ----------
    lock_manager:
        Guards against concurrent deployments.
    backup_manager:
        Snapshots state before the first step and restores on failure.
    notifier:
        Receives SUCCESS / FAILED outcomes.
    executor:
        Runs individual steps with retry.
    history:
        Archive for terminal runs.
    holder_id:
        Lock holder token; defaults to the current process id.
    on_transition:
        Optional callback invoked with the run after every state change.
    """

    def __init__(
        self,
        lock_manager: LockManager,
        backup_manager: BackupManager,
        notifier: NotifierGateway,
        executor: StepExecutor | None = None,
        history: RunHistory | None = None,
        holder_id: str | None = None,
        on_transition: Callable[[PipelineRun], None] | None = None,
    ) -> None:
        self._lock = lock_manager
        self._backup = backup_manager
        self._notifier = notifier
        self._executor = executor or StepExecutor()
        self._history = history
        self.holder_id = holder_id or str(os.getpid())
        self._on_transition = on_transition
        self._runs: dict[str, PipelineRun] = {}

    def start(
        self,
        environment: str,
        steps: Iterable[StepDescriptor],
        take_snapshot: bool = True,
    ) -> str:
        """Execute *steps* against *environment* and return the run id.

        Blocks until the run is terminal.  Raises ``ValueError`` for
        duplicate step names before the lock is touched.
        """
        ordered = tuple(steps)
        _check_unique_names(ordered)

        run = PipelineRun(
            id=uuid.uuid4().hex[:12],
            environment=environment,
            started_at=_now(),
            steps=ordered,
        )
        self._runs[run.id] = run
        logger.info("Deployment %s started for %s", run.id, environment)

        self._transition(run, PipelineState.LOCKING)
        try:
            with self._lock.held(self.holder_id):
                try:
                    self._execute(run, take_snapshot)
                except BaseException:
                    if not run.terminal:
                        run.failure_reason = run.failure_reason or "interrupted"
                        run.status = RunStatus.FAILED
                        self._finish(run, PipelineState.FAILED)
                    raise
        except LockContentionError as exc:
            run.lock_contention = True
            run.lock_holder = exc.holder_id
            run.failure_reason = str(exc)
            run.status = RunStatus.FAILED
            self._finish(run, PipelineState.FAILED)

        return run.id

    def status(self, run_id: str) -> PipelineRun:
        """Return a run from this engine, falling back to the history."""
        run = self._runs.get(run_id)
        if run is None and self._history is not None:
            run = self._history.get(run_id)
        if run is None:
            raise KeyError(f"Unknown run: {run_id}")
        return run

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _execute(self, run: PipelineRun, take_snapshot: bool) -> None:
        self._transition(run, PipelineState.BACKING_UP)
        if take_snapshot:
            self._take_snapshot(run)
        else:
            logger.info("Skipping backup")

        if self._run_steps(run):
            run.status = RunStatus.SUCCEEDED
            self._finish(run, PipelineState.SUCCEEDED)
            self._notifier.send(DeployStatus.SUCCESS, "Deployment completed successfully")
        else:
            self._roll_back(run)

    def _take_snapshot(self, run: PipelineRun) -> None:
        try:
            snap = self._backup.snapshot()
        except Exception as exc:
            logger.warning("Backup failed, continuing deployment: %s", exc)
            return
        run.snapshot_id = snap.id

    def _run_steps(self, run: PipelineRun) -> bool:
        """Run every step in order; False at the first failure."""
        for index, step in enumerate(run.steps):
            run.current_index = index
            self._transition(run, PipelineState.RUNNING)
            logger.info("Running: %s", step.name)

            outcome = self._executor.run(step)
            if not outcome.ok:
                logger.error("%s failed: %s", step.name, outcome.reason)
                run.failure_step = step.name
                run.failure_reason = outcome.reason
                return False
            logger.info("%s completed", step.name)
        return True

    def _roll_back(self, run: PipelineRun) -> None:
        self._transition(run, PipelineState.FAILING)
        logger.error("DEPLOYMENT FAILED at step: %s", run.failure_step)

        run.status = RunStatus.ROLLED_BACK
        self._transition(run, PipelineState.ROLLING_BACK)
        logger.warning("Rolling back deployment")
        try:
            run.restore = self._backup.restore()
        except Exception as exc:
            logger.error("Rollback raised: %s", exc)
            run.restore = RestoreResult(
                status=RestoreStatus.PARTIAL, detail=[f"restore raised: {exc}"],
            )
        if run.restore.status is RestoreStatus.PARTIAL:
            logger.error("Rollback incomplete; manual recovery required")

        run.status = RunStatus.FAILED
        self._finish(run, PipelineState.FAILED)
        self._notifier.send(
            DeployStatus.FAILED, f"Deployment failed at step: {run.failure_step}",
        )

    def _transition(self, run: PipelineRun, state: PipelineState) -> None:
        logger.debug("Run %s: %s -> %s", run.id, run.state.value, state.value)
        run.state = state
        if self._on_transition is not None:
            self._on_transition(run)

    def _finish(self, run: PipelineRun, state: PipelineState) -> None:
        run.finished_at = _now()
        self._transition(run, state)
        if self._history is None:
            return
        try:
            self._history.record(run)
        except sqlite3.Error as exc:
            logger.warning("Could not archive run %s: %s", run.id, exc)


def _check_unique_names(steps: tuple[StepDescriptor, ...]) -> None:
    seen: set[str] = set()
    for step in steps:
        if step.name in seen:
            raise ValueError(f"Duplicate step name: {step.name}")
        seen.add(step.name)


def _now() -> datetime:
    return datetime.now(timezone.utc)
