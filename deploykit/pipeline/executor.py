"""StepExecutor — runs one step with bounded, fixed-delay retry."""

from __future__ import annotations

import logging
import time
from typing import Callable

from deploykit.pipeline.step import Outcome, StepAttempt, StepDescriptor

logger = logging.getLogger(__name__)


class StepExecutor:
    """Execute a :class:`StepDescriptor` and report a single Outcome.

    Parameters
    ----------
    sleep:
        Suspend function used between attempts.
    observer:
        Optional callback receiving a :class:`StepAttempt` per attempt.
    """

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        observer: Callable[[StepAttempt], None] | None = None,
    ) -> None:
        self._sleep = sleep
        self._observer = observer

    def run(self, step: StepDescriptor) -> Outcome:
        """Attempt *step* up to ``max_attempts`` times.

        Returns the first success, or the last failure once every
        attempt has failed.
        """
        outcome = Outcome.failure("not attempted")
        for attempt in range(1, step.max_attempts + 1):
            outcome = self._attempt(step)
            self._emit(StepAttempt(
                step=step.name,
                attempt=attempt,
                max_attempts=step.max_attempts,
                outcome=outcome,
            ))
            if outcome.ok:
                return outcome
            if attempt < step.max_attempts:
                self._sleep(step.retry_delay)

        if step.max_attempts > 1:
            logger.error(
                "%s failed after %d attempts: %s",
                step.name, step.max_attempts, outcome.reason,
            )
        return outcome

    def _attempt(self, step: StepDescriptor) -> Outcome:
        try:
            result = step.action()
        except Exception as exc:
            logger.debug("Step %s raised", step.name, exc_info=True)
            return Outcome.failure(f"{type(exc).__name__}: {exc}")

        if not isinstance(result, Outcome):
            logger.error(
                "Step %s returned %s instead of an Outcome",
                step.name, type(result).__name__,
            )
            return Outcome.failure(
                f"step returned {type(result).__name__}, expected Outcome"
            )
        return result

    def _emit(self, event: StepAttempt) -> None:
        if event.outcome.ok:
            logger.info(
                "%s: attempt %d/%d succeeded",
                event.step, event.attempt, event.max_attempts,
            )
        else:
            logger.warning(
                "%s: attempt %d/%d failed: %s",
                event.step, event.attempt, event.max_attempts, event.outcome.reason,
            )
        if self._observer is not None:
            self._observer(event)
