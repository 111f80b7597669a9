"""Deployment lock — one live deployment per lock file."""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from deploykit.errors import LockContentionError
from deploykit.runtime.process import is_process_alive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockRecord:
    """The persisted lock: who holds it and since when."""

    holder_id: str
    acquired_at: datetime
    hostname: str = ""

    def to_dict(self) -> dict:
        return {
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at.isoformat(),
            "hostname": self.hostname,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LockRecord:
        return cls(
            holder_id=str(data["holder_id"]),
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
            hostname=data.get("hostname", ""),
        )


class LockState(str, Enum):
    """Result kinds of lock operations."""

    ACQUIRED = "acquired"
    BUSY = "busy"
    RELEASED = "released"
    NOT_HELD = "not_held"


@dataclass(frozen=True)
class LockResult:
    """Outcome of :meth:`LockManager.acquire` or :meth:`LockManager.release`.

    ``record`` is the new record on ACQUIRED and the existing holder's
    record on BUSY.
    """

    state: LockState
    record: LockRecord | None = None

    @property
    def acquired(self) -> bool:
        return self.state is LockState.ACQUIRED


class LockManager:
    """Mutual exclusion for the deployment workflow.

    The lock is a single JSON file, published with its content by a hard
    link so no reader ever sees it half written.  A lock whose holder
    process is no longer alive is stale and is reclaimed by the next
    acquirer; of two acquirers reclaiming the same stale record, the one
    whose rename lands last wins.

    Parameters
    ----------
    lock_path:
        Location of the lock file.
    liveness:
        Callable deciding whether a holder id is still running.
    unreadable_grace:
        Seconds an unparseable lock file counts as held before it may be
        reclaimed.
    """

    def __init__(
        self,
        lock_path: str | Path,
        liveness: Callable[[str], bool] = is_process_alive,
        unreadable_grace: float = 30.0,
    ) -> None:
        self.lock_path = Path(lock_path)
        self._liveness = liveness
        self.unreadable_grace = unreadable_grace

    def acquire(self, holder_id: str) -> LockResult:
        """Try to take the lock for *holder_id*."""
        record = LockRecord(
            holder_id=holder_id,
            acquired_at=datetime.now(timezone.utc),
            hostname=socket.gethostname(),
        )
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        if self._create_exclusive(record):
            logger.info("Deployment lock acquired by %s", holder_id)
            return LockResult(LockState.ACQUIRED, record)

        existing = self._read()
        if existing is not None:
            if existing.holder_id == holder_id:
                return LockResult(LockState.ACQUIRED, existing)
            if self.is_live(existing.holder_id):
                logger.warning(
                    "Another deployment is running (holder: %s)", existing.holder_id,
                )
                return LockResult(LockState.BUSY, existing)
            logger.info("Reclaiming stale lock held by %s", existing.holder_id)
        elif not self.lock_path.exists():
            # Released between our create attempt and the read
            return self.acquire(holder_id)
        elif self._unreadable_is_fresh():
            logger.warning("Lock file %s is unreadable; treating it as held", self.lock_path)
            return LockResult(LockState.BUSY)
        else:
            logger.info("Reclaiming unreadable lock file %s", self.lock_path)

        self._replace(record)
        # Another reclaimer may have renamed over us
        winner = self._read()
        if winner is None or winner.holder_id != holder_id:
            holder = winner.holder_id if winner else "unknown"
            logger.warning("Another deployment is running (holder: %s)", holder)
            return LockResult(LockState.BUSY, winner)
        logger.info("Deployment lock acquired by %s", holder_id)
        return LockResult(LockState.ACQUIRED, record)

    def release(self, holder_id: str) -> LockResult:
        """Release the lock.  Only the current holder can release."""
        existing = self._read()
        if existing is None or existing.holder_id != holder_id:
            return LockResult(LockState.NOT_HELD, existing)

        self.lock_path.unlink(missing_ok=True)
        logger.info("Deployment lock released by %s", holder_id)
        return LockResult(LockState.RELEASED, existing)

    def is_live(self, holder_id: str) -> bool:
        return self._liveness(holder_id)

    def peek(self) -> LockRecord | None:
        """Return the stored lock record, live or stale."""
        return self._read()

    def current(self) -> LockRecord | None:
        """Return the live lock record, or None if unlocked or stale."""
        record = self.peek()
        if record is None or not self.is_live(record.holder_id):
            return None
        return record

    @contextmanager
    def held(self, holder_id: str) -> Iterator[LockRecord]:
        """Hold the lock for the duration of a ``with`` block.

        Raises
        ------
        LockContentionError
            If another live holder owns the lock.
        """
        result = self.acquire(holder_id)
        if not result.acquired:
            holder = result.record.holder_id if result.record else "unknown"
            raise LockContentionError(holder)
        try:
            yield result.record
        finally:
            self.release(holder_id)

    # -- Storage --------------------------------------------------------------

    def _write_temp(self, record: LockRecord) -> Path:
        tmp = self.lock_path.with_name(f"{self.lock_path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
        return tmp

    def _create_exclusive(self, record: LockRecord) -> bool:
        # The lock file appears with its content already in place
        tmp = self._write_temp(record)
        try:
            os.link(tmp, self.lock_path)
        except FileExistsError:
            return False
        finally:
            tmp.unlink(missing_ok=True)
        return True

    def _replace(self, record: LockRecord) -> None:
        os.replace(self._write_temp(record), self.lock_path)

    def _unreadable_is_fresh(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except OSError:
            return False
        return age < self.unreadable_grace

    def _read(self) -> LockRecord | None:
        try:
            text = self.lock_path.read_text(encoding="utf-8").strip()
            mtime = self.lock_path.stat().st_mtime
        except OSError:
            return None
        # Plain pid files written by older shell tooling
        if text.isdigit():
            return LockRecord(
                holder_id=text,
                acquired_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
            )
        try:
            return LockRecord.from_dict(json.loads(text))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError):
            return None
