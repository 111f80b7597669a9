"""BackupManager — point-in-time snapshots, retention and restore."""

from __future__ import annotations

import logging
import shutil
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field

from deploykit.runtime.compose import ComposeRuntime

logger = logging.getLogger(__name__)

VOLUME_ARCHIVE = "data_volume.tar.gz"
DATABASE_DUMP = "database.sql"
METADATA_FILE = "metadata.json"
SNAPSHOT_PREFIX = "backup_"


class BackupFailure(BaseModel):
    """One artifact that could not be captured."""

    artifact: str
    detail: str


class Snapshot(BaseModel):
    """Immutable metadata of a stored snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
    path: str
    payload_refs: list[str] = Field(default_factory=list)
    size: int = 0
    errors: list[BackupFailure] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.errors)


class RestoreStatus(str, Enum):
    RESTORED = "restored"
    NO_SNAPSHOT = "no_snapshot"
    PARTIAL = "partial"


class RestoreResult(BaseModel):
    """Outcome of :meth:`BackupManager.restore`."""

    status: RestoreStatus
    snapshot_id: str | None = None
    detail: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is RestoreStatus.RESTORED


class BackupManager:
    """Create, list, prune and restore deployment snapshots.

    Each snapshot is a ``backup_<timestamp>`` directory holding the
    captured artifacts and a ``metadata.json``.  Capturing is
    best-effort: an artifact that fails is recorded on the snapshot and
    the remaining artifacts are still captured.

    Parameters
    ----------
    backup_root:
        Directory holding all snapshots.
    project_root:
        Application directory whose config and env files are captured.
    runtime:
        Container runtime used for volumes, database dumps and restarting
        the stack on restore.  Without one only files are captured.
    app_volume:
        Name of the data volume to archive.
    config_dirs:
        Directories (relative to *project_root*) copied into the snapshot.
    env_pattern:
        Glob of env files (relative to *project_root*) to capture.
    database_dump:
        ``(service, command)`` producing a SQL dump on stdout, or None.
    retention_days:
        Snapshots older than this are pruned after each new snapshot.
    protected:
        Callable returning snapshot ids that retention must never remove.
    """

    def __init__(
        self,
        backup_root: str | Path,
        project_root: str | Path,
        runtime: ComposeRuntime | None = None,
        app_volume: str | None = None,
        config_dirs: Sequence[str] = ("config",),
        env_pattern: str = ".env*",
        database_dump: tuple[str, Sequence[str]] | None = None,
        retention_days: float = 7,
        protected: Callable[[], Iterable[str]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backup_root = Path(backup_root)
        self.project_root = Path(project_root)
        self.runtime = runtime
        self.app_volume = app_volume
        self.config_dirs = tuple(config_dirs)
        self.env_pattern = env_pattern
        self.database_dump = database_dump
        self.retention_days = retention_days
        self._protected = protected or (lambda: ())
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._exclusive = threading.Lock()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> Snapshot:
        """Capture the current deployment state.

        Never raises; failures are listed in ``Snapshot.errors``.
        """
        created_at = self._clock()
        snap_id = self._new_id(created_at)
        snap_dir = self.backup_root / snap_id
        refs: list[str] = []
        errors: list[BackupFailure] = []

        logger.info("Creating backup %s", snap_id)
        try:
            snap_dir.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            logger.warning("Backup directory could not be created: %s", exc)
            return Snapshot(
                id=snap_id,
                created_at=created_at,
                path=str(snap_dir),
                errors=[BackupFailure(artifact="snapshot", detail=str(exc))],
            )

        self._capture("volume", lambda: self._capture_volume(snap_dir), refs, errors)
        for name in self.config_dirs:
            self._capture(
                f"config:{name}", lambda n=name: self._capture_dir(n, snap_dir), refs, errors,
            )
        self._capture("env", lambda: self._capture_env_files(snap_dir), refs, errors)
        self._capture("database", lambda: self._capture_database(snap_dir), refs, errors)

        snap = Snapshot(
            id=snap_id,
            created_at=created_at,
            path=str(snap_dir),
            payload_refs=refs,
            size=_dir_size(snap_dir),
            errors=errors,
        )
        try:
            (snap_dir / METADATA_FILE).write_text(
                snap.model_dump_json(indent=2), encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("Backup metadata could not be written: %s", exc)

        if errors:
            logger.warning(
                "Backup %s created with %d failed artifact(s)", snap_id, len(errors),
            )
        else:
            logger.info("Backup created: %s", snap_dir)

        try:
            self.prune(keep=self._protected())
        except Exception as exc:
            logger.warning("Backup retention cleanup failed: %s", exc)
        return snap

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def list_snapshots(self) -> list[Snapshot]:
        """Return all snapshots, oldest first."""
        snapshots: list[Snapshot] = []
        if not self.backup_root.is_dir():
            return snapshots

        for snap_dir in self.backup_root.iterdir():
            meta_path = snap_dir / METADATA_FILE
            if not snap_dir.name.startswith(SNAPSHOT_PREFIX) or not meta_path.is_file():
                continue
            try:
                snapshots.append(
                    Snapshot.model_validate_json(meta_path.read_text(encoding="utf-8"))
                )
            except (ValueError, OSError):
                logger.debug("Unreadable snapshot metadata: %s", meta_path, exc_info=True)

        snapshots.sort(key=lambda s: (s.created_at, s.id))
        return snapshots

    def latest(self) -> Snapshot | None:
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    def get(self, snapshot_id: str) -> Snapshot | None:
        for snap in self.list_snapshots():
            if snap.id == snapshot_id:
                return snap
        return None

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune(
        self,
        max_age: timedelta | None = None,
        keep: Iterable[str] = (),
    ) -> int:
        """Delete snapshots older than *max_age*.

        The newest snapshot and any id in *keep* are always kept.  Waits
        for an in-progress restore to finish.  Returns the number of
        snapshots removed.
        """
        if max_age is None:
            max_age = timedelta(days=self.retention_days)

        with self._exclusive:
            snapshots = self.list_snapshots()
            cutoff = self._clock() - max_age
            removed = 0
            kept = set(keep)
            for snap in snapshots[:-1]:
                if snap.created_at >= cutoff or snap.id in kept:
                    continue
                shutil.rmtree(self.backup_root / snap.id, ignore_errors=True)
                removed += 1
                logger.info("Pruned backup %s", snap.id)
        return removed

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, snapshot: Snapshot | None = None) -> RestoreResult:
        """Restore *snapshot*, or the most recent one when omitted."""
        with self._exclusive:
            target = snapshot if snapshot is not None else self.latest()
            if target is None:
                logger.error("No backup found for rollback")
                return RestoreResult(status=RestoreStatus.NO_SNAPSHOT)

            snap_dir = self.backup_root / target.id
            logger.warning("Restoring from backup: %s", snap_dir)
            problems: list[str] = []

            if not snap_dir.is_dir():
                problems.append(f"snapshot directory missing: {snap_dir}")
            else:
                if self.runtime is not None:
                    self._restore_step("stop services", self.runtime.bring_down, problems)
                if VOLUME_ARCHIVE in target.payload_refs:
                    self._restore_step(
                        "restore volume", lambda: self._restore_volume(snap_dir), problems,
                    )
                for ref in target.payload_refs:
                    if ref in (VOLUME_ARCHIVE, DATABASE_DUMP):
                        continue
                    self._restore_step(
                        f"restore {ref}", lambda r=ref: self._restore_path(snap_dir, r), problems,
                    )
                if self.runtime is not None:
                    self._restore_step("start services", self.runtime.bring_up, problems)

        if problems:
            logger.error("Rollback incomplete for %s: %s", target.id, "; ".join(problems))
            return RestoreResult(
                status=RestoreStatus.PARTIAL, snapshot_id=target.id, detail=problems,
            )
        logger.info("Rollback completed from %s", target.id)
        return RestoreResult(status=RestoreStatus.RESTORED, snapshot_id=target.id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _new_id(self, created_at: datetime) -> str:
        base = f"{SNAPSHOT_PREFIX}{created_at:%Y%m%d_%H%M%S_%f}"
        candidate = base
        n = 1
        while (self.backup_root / candidate).exists():
            candidate = f"{base}_{n}"
            n += 1
        return candidate

    @staticmethod
    def _capture(
        artifact: str,
        func: Callable[[], Any],
        refs: list[str],
        errors: list[BackupFailure],
    ) -> None:
        try:
            captured = func()
        except Exception as exc:
            logger.warning("Backup of %s failed: %s", artifact, exc)
            errors.append(BackupFailure(artifact=artifact, detail=str(exc)))
            return
        if isinstance(captured, str):
            refs.append(captured)
        elif captured:
            refs.extend(captured)

    def _capture_volume(self, snap_dir: Path) -> str | None:
        if self.runtime is None or not self.app_volume:
            return None
        if not self.runtime.volume_exists(self.app_volume):
            logger.debug("Volume %s not found, skipping", self.app_volume)
            return None
        self.runtime.archive_volume(self.app_volume, snap_dir, VOLUME_ARCHIVE)
        return VOLUME_ARCHIVE

    def _capture_dir(self, name: str, snap_dir: Path) -> str | None:
        src = self.project_root / name
        if not src.is_dir():
            return None
        shutil.copytree(src, snap_dir / name)
        return name

    def _capture_env_files(self, snap_dir: Path) -> list[str]:
        names: list[str] = []
        for src in sorted(self.project_root.glob(self.env_pattern)):
            if src.is_file():
                shutil.copy2(src, snap_dir / src.name)
                names.append(src.name)
        return names

    def _capture_database(self, snap_dir: Path) -> str | None:
        if self.runtime is None or self.database_dump is None:
            return None
        service, command = self.database_dump
        result = self.runtime.exec_in_service(service, command)
        if not result.ok:
            raise RuntimeError(
                f"dump exited with {result.exit_code}: {result.stderr.strip()}"
            )
        (snap_dir / DATABASE_DUMP).write_text(result.stdout, encoding="utf-8")
        return DATABASE_DUMP

    def _restore_volume(self, snap_dir: Path) -> None:
        if self.runtime is None or not self.app_volume:
            raise RuntimeError("no container runtime configured for volume restore")
        self.runtime.restore_volume(self.app_volume, snap_dir, VOLUME_ARCHIVE)

    def _restore_path(self, snap_dir: Path, ref: str) -> None:
        src = snap_dir / ref
        dest = self.project_root / ref
        if src.is_dir():
            shutil.copytree(src, dest, dirs_exist_ok=True)
        elif src.is_file():
            shutil.copy2(src, dest)
        else:
            raise FileNotFoundError(f"{ref} missing from snapshot")

    @staticmethod
    def _restore_step(label: str, func: Callable[[], Any], problems: list[str]) -> None:
        try:
            func()
        except Exception as exc:
            logger.error("Rollback step '%s' failed: %s", label, exc)
            problems.append(f"{label}: {exc}")


def _dir_size(path: Path) -> int:
    total = 0
    for item in path.rglob("*"):
        try:
            if item.is_file():
                total += item.stat().st_size
        except OSError:
            continue
    return total
