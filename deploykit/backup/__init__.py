"""Snapshot creation, retention and restore."""

from deploykit.backup.manager import (
    BackupFailure,
    BackupManager,
    RestoreResult,
    RestoreStatus,
    Snapshot,
)

__all__ = [
    "BackupFailure",
    "BackupManager",
    "RestoreResult",
    "RestoreStatus",
    "Snapshot",
]
