"""Tests for BackupManager snapshots, retention and restore."""

from __future__ import annotations

import json
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

from deploykit.backup.manager import (
    DATABASE_DUMP,
    METADATA_FILE,
    VOLUME_ARCHIVE,
    BackupManager,
    RestoreStatus,
)
from deploykit.errors import RuntimeCommandError
from deploykit.runtime.compose import ComposeRuntime, ExecResult


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _project(root: Path) -> Path:
    project = root / "app"
    (project / "config").mkdir(parents=True)
    (project / "config" / "app.yml").write_text("replicas: 3\n")
    (project / ".env").write_text("SECRET=one\n")
    (project / ".env.production").write_text("MODE=prod\n")
    return project


def _runtime() -> MagicMock:
    runtime = MagicMock(spec=ComposeRuntime)
    runtime.volume_exists.return_value = True
    runtime.exec_in_service.return_value = ExecResult(stdout="-- dump --\n")
    return runtime


# ── Snapshot ─────────────────────────────────────────────────────────────────

class TestSnapshot:

    def test_captures_config_and_env_files(self):
        with tempfile.TemporaryDirectory() as d:
            project = _project(Path(d))
            mgr = BackupManager(Path(d) / "backups", project)
            snap = mgr.snapshot()

            snap_dir = Path(snap.path)
            assert snap.id.startswith("backup_")
            assert not snap.partial
            assert (snap_dir / "config" / "app.yml").read_text() == "replicas: 3\n"
            assert (snap_dir / ".env").is_file()
            assert set(snap.payload_refs) == {"config", ".env", ".env.production"}
            assert snap.size > 0

    def test_metadata_written(self):
        with tempfile.TemporaryDirectory() as d:
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)))
            snap = mgr.snapshot()
            meta = json.loads((Path(snap.path) / METADATA_FILE).read_text())
            assert meta["id"] == snap.id
            assert mgr.list_snapshots()[0].id == snap.id

    def test_volume_and_database_captured_through_runtime(self):
        with tempfile.TemporaryDirectory() as d:
            runtime = _runtime()
            mgr = BackupManager(
                Path(d) / "backups", _project(Path(d)),
                runtime=runtime, app_volume="shop_data",
                database_dump=("db", ["pg_dump", "-U", "postgres", "shop"]),
            )
            snap = mgr.snapshot()
            runtime.archive_volume.assert_called_once()
            assert VOLUME_ARCHIVE in snap.payload_refs
            assert DATABASE_DUMP in snap.payload_refs
            assert (Path(snap.path) / DATABASE_DUMP).read_text() == "-- dump --\n"

    def test_missing_volume_is_skipped(self):
        with tempfile.TemporaryDirectory() as d:
            runtime = _runtime()
            runtime.volume_exists.return_value = False
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)),
                                runtime=runtime, app_volume="shop_data")
            snap = mgr.snapshot()
            assert VOLUME_ARCHIVE not in snap.payload_refs
            assert not snap.partial

    def test_failed_artifact_is_recorded_and_rest_captured(self):
        with tempfile.TemporaryDirectory() as d:
            runtime = _runtime()
            runtime.archive_volume.side_effect = RuntimeCommandError(["docker", "run"], 1, "no space")
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)),
                                runtime=runtime, app_volume="shop_data")
            snap = mgr.snapshot()
            assert snap.partial
            assert snap.errors[0].artifact == "volume"
            assert "no space" in snap.errors[0].detail
            assert "config" in snap.payload_refs

    def test_failed_database_dump(self):
        with tempfile.TemporaryDirectory() as d:
            runtime = _runtime()
            runtime.exec_in_service.return_value = ExecResult(exit_code=2, stderr="auth failed")
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)), runtime=runtime,
                                database_dump=("db", ["pg_dump"]))
            snap = mgr.snapshot()
            assert [e.artifact for e in snap.errors] == ["database"]

    def test_ids_are_unique_within_same_instant(self):
        with tempfile.TemporaryDirectory() as d:
            clock = Clock()
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)), clock=clock)
            first = mgr.snapshot()
            second = mgr.snapshot()
            assert first.id != second.id


# ── Retention ────────────────────────────────────────────────────────────────

class TestRetention:

    def _three(self, root: Path, clock: Clock, **kwargs) -> tuple[BackupManager, list]:
        mgr = BackupManager(root / "backups", _project(root), clock=clock,
                            retention_days=7, **kwargs)
        snaps = []
        for _ in range(3):
            snaps.append(mgr.snapshot())
            clock.advance(days=5)
        return mgr, snaps

    def test_old_snapshots_pruned_after_snapshot(self):
        with tempfile.TemporaryDirectory() as d:
            clock = Clock()
            mgr, snaps = self._three(Path(d), clock)
            remaining = [s.id for s in mgr.list_snapshots()]
            # The first (10 days old at the third snapshot) is gone
            assert snaps[0].id not in remaining
            assert snaps[2].id in remaining

    def test_newest_snapshot_always_kept(self):
        with tempfile.TemporaryDirectory() as d:
            clock = Clock()
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)), clock=clock)
            only = mgr.snapshot()
            clock.advance(days=365)
            assert mgr.prune() == 0
            assert mgr.latest().id == only.id

    def test_protected_snapshot_survives(self):
        with tempfile.TemporaryDirectory() as d:
            clock = Clock()
            protected: set[str] = set()
            mgr, snaps = self._three(Path(d), clock, protected=lambda: protected)
            protected.add(snaps[1].id)
            clock.advance(days=30)
            mgr.snapshot()
            remaining = [s.id for s in mgr.list_snapshots()]
            assert snaps[1].id in remaining
            assert snaps[2].id not in remaining

    def test_explicit_max_age(self):
        with tempfile.TemporaryDirectory() as d:
            clock = Clock()
            mgr, snaps = self._three(Path(d), clock)
            removed = mgr.prune(max_age=timedelta(days=1))
            assert removed == 1
            assert [s.id for s in mgr.list_snapshots()] == [snaps[2].id]


# ── Restore ──────────────────────────────────────────────────────────────────

class TestRestore:

    def test_no_snapshot(self):
        with tempfile.TemporaryDirectory() as d:
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)))
            result = mgr.restore()
            assert result.status is RestoreStatus.NO_SNAPSHOT
            assert not result.ok

    def test_restores_files_from_latest(self):
        with tempfile.TemporaryDirectory() as d:
            project = _project(Path(d))
            mgr = BackupManager(Path(d) / "backups", project)
            snap = mgr.snapshot()
            (project / "config" / "app.yml").write_text("replicas: 0\n")
            (project / ".env").write_text("SECRET=broken\n")

            result = mgr.restore()
            assert result.ok
            assert result.snapshot_id == snap.id
            assert (project / "config" / "app.yml").read_text() == "replicas: 3\n"
            assert (project / ".env").read_text() == "SECRET=one\n"

    def test_runtime_restart_and_volume_restore(self):
        with tempfile.TemporaryDirectory() as d:
            runtime = _runtime()
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)),
                                runtime=runtime, app_volume="shop_data")
            mgr.snapshot()
            result = mgr.restore()
            assert result.ok
            runtime.bring_down.assert_called_once()
            runtime.restore_volume.assert_called_once()
            runtime.bring_up.assert_called_once()

    def test_database_dump_not_replayed(self):
        with tempfile.TemporaryDirectory() as d:
            project = _project(Path(d))
            mgr = BackupManager(Path(d) / "backups", project, runtime=_runtime(),
                                database_dump=("db", ["pg_dump"]))
            mgr.snapshot()
            assert mgr.restore().ok
            assert not (project / DATABASE_DUMP).exists()

    def test_failed_restart_is_partial(self):
        with tempfile.TemporaryDirectory() as d:
            runtime = _runtime()
            runtime.bring_up.side_effect = RuntimeCommandError(["docker-compose", "up"], 1, "port busy")
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)), runtime=runtime)
            mgr.snapshot()
            result = mgr.restore()
            assert result.status is RestoreStatus.PARTIAL
            assert any("start services" in line for line in result.detail)

    def test_restore_specific_snapshot(self):
        with tempfile.TemporaryDirectory() as d:
            clock = Clock()
            project = _project(Path(d))
            mgr = BackupManager(Path(d) / "backups", project, clock=clock)
            first = mgr.snapshot()
            (project / ".env").write_text("SECRET=two\n")
            clock.advance(hours=1)
            mgr.snapshot()

            result = mgr.restore(first)
            assert result.snapshot_id == first.id
            assert (project / ".env").read_text() == "SECRET=one\n"


# ── Restore vs retention ─────────────────────────────────────────────────────

class TestRestoreExclusion:

    def test_prune_waits_for_in_flight_restore(self):
        with tempfile.TemporaryDirectory() as d:
            clock = Clock()
            entered = threading.Event()
            release = threading.Event()

            def slow_bring_down(*args, **kwargs):
                entered.set()
                release.wait(5)

            runtime = MagicMock(spec=ComposeRuntime)
            runtime.bring_down.side_effect = slow_bring_down
            mgr = BackupManager(Path(d) / "backups", _project(Path(d)),
                                runtime=runtime, clock=clock, retention_days=30)
            old = mgr.snapshot()
            clock.advance(days=10)
            mgr.snapshot()

            results = {}
            restorer = threading.Thread(target=lambda: results.update(restore=mgr.restore(old)))
            restorer.start()
            assert entered.wait(5)

            pruner = threading.Thread(
                target=lambda: results.update(removed=mgr.prune(max_age=timedelta(0))),
            )
            pruner.start()
            pruner.join(0.2)
            assert pruner.is_alive()
            assert Path(old.path).is_dir()

            release.set()
            restorer.join(5)
            pruner.join(5)
            assert results["restore"].ok
            assert results["restore"].snapshot_id == old.id
            assert results["removed"] == 1
            assert not Path(old.path).exists()
