"""Deployment pipeline — locking, step execution, state machine, history."""

from deploykit.pipeline.engine import PipelineEngine
from deploykit.pipeline.executor import StepExecutor
from deploykit.pipeline.history import RunHistory
from deploykit.pipeline.locking import LockManager, LockRecord, LockResult, LockState
from deploykit.pipeline.run import PipelineRun, PipelineState, RunStatus
from deploykit.pipeline.step import Outcome, StepAttempt, StepDescriptor

__all__ = [
    "LockManager",
    "LockRecord",
    "LockResult",
    "LockState",
    "Outcome",
    "PipelineEngine",
    "PipelineRun",
    "PipelineState",
    "RunHistory",
    "RunStatus",
    "StepAttempt",
    "StepDescriptor",
    "StepExecutor",
]
