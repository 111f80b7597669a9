"""ComposeRuntime — docker and docker compose invoked via subprocess.

All container operations use :func:`subprocess.run`; no docker SDK
dependency.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Sequence

from pydantic import BaseModel

from deploykit.errors import RuntimeCommandError

logger = logging.getLogger(__name__)

_BACKUP_IMAGE = "alpine"


class ExecResult(BaseModel):
    """Output of a command run inside a service container."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(
    cmd: Sequence[str],
    cwd: str | Path | None = None,
    check: bool = True,
    input: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Execute *cmd* and return the completed process.

    Parameters
    ----------
    cmd:
        Full argument vector, executable first.
    cwd:
        Working directory for the command.
    check:
        If *True*, raise :class:`RuntimeCommandError` on non-zero exit.
    input:
        Text written to the command's stdin.
    """
    argv = list(cmd)
    logger.debug("%s (cwd=%s)", " ".join(argv), cwd)
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            input=input,
        )
    except FileNotFoundError as exc:
        raise RuntimeCommandError(argv, 127, str(exc)) from exc
    if check and result.returncode != 0:
        raise RuntimeCommandError(argv, result.returncode, result.stderr or "")
    return result


class ComposeRuntime:
    """Drive the container runtime and its compose tooling.

    Parameters
    ----------
    project_dir:
        Root directory of the application being deployed.
    compose_file:
        Compose file, relative to *project_dir* unless absolute.
    docker:
        Docker executable.
    compose_command:
        Compose invocation, e.g. ``("docker-compose",)`` or
        ``("docker", "compose")``.
    """

    def __init__(
        self,
        project_dir: str | Path,
        compose_file: str | Path = "docker/docker-compose.yml",
        docker: str = "docker",
        compose_command: Sequence[str] = ("docker-compose",),
    ) -> None:
        self.project_dir = Path(project_dir)
        compose_path = Path(compose_file)
        if not compose_path.is_absolute():
            compose_path = self.project_dir / compose_path
        self.compose_file = compose_path
        self.docker = docker
        self.compose_command = tuple(compose_command)

    # -- Images ---------------------------------------------------------------

    def version(self) -> str:
        """Return the docker client version string, e.g. ``24.0.7``."""
        out = self._docker("--version").stdout.strip()
        # "Docker version 24.0.7, build afdd53b"
        parts = out.split()
        return parts[2].rstrip(",") if len(parts) >= 3 else out

    def build_image(
        self,
        tags: Sequence[str],
        dockerfile: str | Path = "docker/Dockerfile",
        build_args: dict[str, str] | None = None,
        cache_from: str | None = None,
        target: str | None = None,
        context: str | Path | None = None,
    ) -> str:
        """Build an image and return its primary reference (first tag)."""
        if not tags:
            raise ValueError("At least one image tag is required.")
        args: list[str] = ["build", "-f", str(dockerfile)]
        for tag in tags:
            args += ["-t", tag]
        for key, value in (build_args or {}).items():
            args += ["--build-arg", f"{key}={value}"]
        if cache_from:
            args += ["--cache-from", cache_from]
        if target:
            args += ["--target", target]
        args.append(str(context or self.project_dir))

        self._docker(*args)
        logger.info("Image built: %s", tags[0])
        return tags[0]

    def scan_image(self, image_ref: str) -> bool:
        """Scan an image for HIGH/CRITICAL vulnerabilities with trivy.

        Returns False when trivy is not installed. Findings never fail
        the scan (``--exit-code 0``).
        """
        if shutil.which("trivy") is None:
            logger.debug("trivy not installed, skipping image scan")
            return False
        run_command(
            ["trivy", "image", "--exit-code", "0",
             "--severity", "HIGH,CRITICAL", image_ref],
            cwd=self.project_dir,
        )
        return True

    def login(self, registry: str, username: str, password: str) -> None:
        """Authenticate against *registry*, passing the password on stdin."""
        self._docker("login", registry, "-u", username, "--password-stdin", input=password)
        logger.info("Logged in to registry %s as %s", registry, username)

    def push_image(self, image_ref: str) -> None:
        self._docker("push", image_ref)
        logger.info("Image pushed: %s", image_ref)

    # -- Compose services -----------------------------------------------------

    def pull(self) -> None:
        self._compose("pull")

    def bring_up(
        self,
        scale: dict[str, int] | None = None,
        force_recreate: bool = False,
        remove_orphans: bool = False,
    ) -> None:
        """Start the compose stack detached."""
        args = ["up", "-d"]
        if remove_orphans:
            args.append("--remove-orphans")
        if force_recreate:
            args.append("--force-recreate")
        for service, count in (scale or {}).items():
            args += ["--scale", f"{service}={count}"]
        self._compose(*args)
        logger.info("Compose stack started: %s", self.compose_file)

    def bring_down(self, timeout: int | None = None) -> None:
        """Stop and remove the compose stack."""
        args = ["down"]
        if timeout is not None:
            args += ["--timeout", str(timeout)]
        self._compose(*args)
        logger.info("Compose stack stopped: %s", self.compose_file)

    def run_in_service(self, service: str, command: Sequence[str]) -> ExecResult:
        """Run a one-off container for *service* (``run --rm``)."""
        return self._to_exec(self._compose("run", "--rm", service, *command, check=False))

    def exec_in_service(self, service: str, command: Sequence[str]) -> ExecResult:
        """Execute *command* inside the running *service* container."""
        return self._to_exec(self._compose("exec", "-T", service, *command, check=False))

    # -- Volumes --------------------------------------------------------------

    def volume_exists(self, name: str) -> bool:
        out = self._docker("volume", "ls", "-q").stdout
        return name in out.split()

    def archive_volume(
        self,
        volume: str,
        dest_dir: str | Path,
        filename: str = "data_volume.tar.gz",
    ) -> Path:
        """Tar the contents of *volume* into ``dest_dir/filename``."""
        dest = Path(dest_dir).resolve()
        self._docker(
            "run", "--rm",
            "-v", f"{volume}:/data",
            "-v", f"{dest}:/backup",
            _BACKUP_IMAGE, "tar", "czf", f"/backup/{filename}", "-C", "/data", ".",
        )
        return dest / filename

    def restore_volume(
        self,
        volume: str,
        src_dir: str | Path,
        filename: str = "data_volume.tar.gz",
    ) -> None:
        """Extract ``src_dir/filename`` into *volume*."""
        src = Path(src_dir).resolve()
        self._docker(
            "run", "--rm",
            "-v", f"{volume}:/data",
            "-v", f"{src}:/backup",
            _BACKUP_IMAGE, "tar", "xzf", f"/backup/{filename}", "-C", "/data",
        )

    # -- Housekeeping ---------------------------------------------------------

    def prune_images(self, until: str = "24h") -> None:
        self._docker("image", "prune", "-f", "--filter", f"until={until}")

    def prune_containers(self) -> None:
        self._docker("container", "prune", "-f")

    def prune_volumes(self) -> None:
        self._docker("volume", "prune", "-f")

    # -- Internal -------------------------------------------------------------

    def _docker(
        self,
        *args: str,
        check: bool = True,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return run_command([self.docker, *args], cwd=self.project_dir, check=check, input=input)

    def _compose(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        cmd = [*self.compose_command, "-f", str(self.compose_file), *args]
        return run_command(cmd, cwd=self.project_dir, check=check)

    @staticmethod
    def _to_exec(result: subprocess.CompletedProcess[str]) -> ExecResult:
        return ExecResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.returncode,
        )
