"""PipelineRun — the state of one deployment run."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from deploykit.backup.manager import RestoreResult, RestoreStatus
from deploykit.pipeline.step import StepDescriptor


class RunStatus(str, Enum):
    """Coarse run status shown to operators."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class PipelineState(str, Enum):
    """Engine state machine positions."""

    IDLE = "idle"
    LOCKING = "locking"
    BACKING_UP = "backing_up"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILING = "failing"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


TERMINAL_STATES = (PipelineState.SUCCEEDED, PipelineState.FAILED)


@dataclass
class PipelineRun:
    """One execution of an ordered step list against an environment."""

    id: str
    environment: str
    started_at: datetime
    steps: tuple[StepDescriptor, ...] = ()
    step_names: list[str] = field(default_factory=list)
    current_index: int = 0
    status: RunStatus = RunStatus.RUNNING
    state: PipelineState = PipelineState.IDLE
    failure_step: str | None = None
    failure_reason: str | None = None
    lock_contention: bool = False
    lock_holder: str | None = None
    snapshot_id: str | None = None
    restore: RestoreResult | None = None
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.steps and not self.step_names:
            self.step_names = [s.name for s in self.steps]

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_record(self) -> dict[str, Any]:
        """Flatten into a run-history row."""
        return {
            "id": self.id,
            "environment": self.environment,
            "status": self.status.value,
            "state": self.state.value,
            "steps": json.dumps(self.step_names),
            "current_index": self.current_index,
            "failure_step": self.failure_step,
            "failure_reason": self.failure_reason,
            "lock_contention": int(self.lock_contention),
            "lock_holder": self.lock_holder,
            "snapshot_id": self.snapshot_id,
            "restore_status": self.restore.status.value if self.restore else None,
            "restore_detail": json.dumps(self.restore.detail) if self.restore else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> PipelineRun:
        restore = None
        if row.get("restore_status"):
            restore = RestoreResult(
                status=RestoreStatus(row["restore_status"]),
                snapshot_id=row.get("snapshot_id"),
                detail=json.loads(row.get("restore_detail") or "[]"),
            )
        finished = row.get("finished_at")
        return cls(
            id=row["id"],
            environment=row["environment"],
            started_at=datetime.fromisoformat(row["started_at"]),
            step_names=json.loads(row.get("steps") or "[]"),
            current_index=row.get("current_index") or 0,
            status=RunStatus(row["status"]),
            state=PipelineState(row["state"]),
            failure_step=row.get("failure_step"),
            failure_reason=row.get("failure_reason"),
            lock_contention=bool(row.get("lock_contention")),
            lock_holder=row.get("lock_holder"),
            snapshot_id=row.get("snapshot_id"),
            restore=restore,
            finished_at=datetime.fromisoformat(finished) if finished else None,
        )
