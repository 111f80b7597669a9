"""Step primitives: the Outcome of an attempt and the StepDescriptor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel, ConfigDict


class Outcome(BaseModel):
    """Result of one step attempt: success, or failure with a reason."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    reason: str = ""

    @classmethod
    def success(cls) -> Outcome:
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> Outcome:
        return cls(ok=False, reason=reason)


@dataclass(frozen=True)
class StepDescriptor:
    """A named unit of deployment work.

    Parameters
    ----------
    name:
        Unique name within a pipeline run.
    action:
        Zero-argument callable returning an :class:`Outcome`.
    max_attempts:
        Total attempts before the step is declared failed (>= 1).
    retry_delay:
        Seconds to wait between attempts.
    """

    name: str
    action: Callable[[], Outcome]
    max_attempts: int = 1
    retry_delay: float = 0.0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Step name must not be empty.")
        if self.max_attempts < 1:
            raise ValueError(f"Step '{self.name}': max_attempts must be >= 1.")
        if self.retry_delay < 0:
            raise ValueError(f"Step '{self.name}': retry_delay must be >= 0.")


class StepAttempt(BaseModel):
    """Progress event emitted after every attempt."""

    step: str
    attempt: int
    max_attempts: int
    outcome: Outcome
