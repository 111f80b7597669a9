"""Exception types shared across deploykit."""

from __future__ import annotations


class DeployKitError(Exception):
    """Base class for all deploykit errors."""


class ConfigError(DeployKitError):
    """Raised when the deployment configuration is invalid."""


class LockContentionError(DeployKitError):
    """Raised when the deployment lock is held by another live process."""

    def __init__(self, holder_id: str) -> None:
        super().__init__(f"Another deployment is running (holder: {holder_id})")
        self.holder_id = holder_id


class RuntimeCommandError(DeployKitError):
    """Raised when a container runtime command exits non-zero."""

    def __init__(self, command: list[str], returncode: int, stderr: str = "") -> None:
        super().__init__(
            f"{' '.join(command)} failed (rc={returncode}): {stderr.strip()}"
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
