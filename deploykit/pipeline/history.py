"""RunHistory — archive of terminal pipeline runs backed by SQLite."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

from deploykit.pipeline.run import PipelineRun

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS runs (
    id              TEXT    PRIMARY KEY,
    environment     TEXT    NOT NULL,
    status          TEXT    NOT NULL,
    state           TEXT    NOT NULL,
    steps           TEXT    NOT NULL DEFAULT '[]',
    current_index   INTEGER NOT NULL DEFAULT 0,
    failure_step    TEXT,
    failure_reason  TEXT,
    lock_contention INTEGER NOT NULL DEFAULT 0,
    lock_holder     TEXT,
    snapshot_id     TEXT,
    restore_status  TEXT,
    restore_detail  TEXT,
    started_at      TEXT    NOT NULL,
    finished_at     TEXT
);
"""

_COLUMNS = (
    "id", "environment", "status", "state", "steps", "current_index",
    "failure_step", "failure_reason", "lock_contention", "lock_holder",
    "snapshot_id", "restore_status", "restore_detail", "started_at",
    "finished_at",
)


class RunHistory:
    """Audit log of finished deployment runs.

    Parameters
    ----------
    db_path:
        Path to the SQLite file.  Defaults to ``':memory:'``.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def record(self, run: PipelineRun) -> None:
        """Insert or replace the row for *run*."""
        row = run.to_record()
        placeholders = ",".join("?" for _ in _COLUMNS)
        with self._lock:
            self._conn.execute(
                f"INSERT OR REPLACE INTO runs ({','.join(_COLUMNS)}) "
                f"VALUES ({placeholders})",
                tuple(row[c] for c in _COLUMNS),
            )
            self._conn.commit()
        logger.debug("Archived run %s (%s)", run.id, run.status.value)

    def get(self, run_id: str) -> PipelineRun | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM runs WHERE id = ?", (run_id,),
            ).fetchone()
        return PipelineRun.from_record(dict(row)) if row else None

    def recent(self, limit: int = 20, environment: str | None = None) -> list[PipelineRun]:
        """Return the most recent runs, newest first."""
        sql = "SELECT * FROM runs"
        params: list[object] = []
        if environment:
            sql += " WHERE environment = ?"
            params.append(environment)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [PipelineRun.from_record(dict(r)) for r in rows]

    def last_failed(self, environment: str | None = None) -> PipelineRun | None:
        sql = "SELECT * FROM runs WHERE status = 'failed'"
        params: list[object] = []
        if environment:
            sql += " AND environment = ?"
            params.append(environment)
        sql += " ORDER BY started_at DESC LIMIT 1"
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return PipelineRun.from_record(dict(row)) if row else None

    def close(self) -> None:
        self._conn.close()
