"""Readiness probes — one dependency each, reporting (healthy, detail)."""

from __future__ import annotations

import abc
import logging
import shutil
import socket
import ssl
import time
from typing import Callable, Sequence

import psutil
import requests

from deploykit.runtime.compose import ComposeRuntime

logger = logging.getLogger(__name__)


class Probe(abc.ABC):
    """Abstract readiness probe."""

    name: str = "probe"

    @abc.abstractmethod
    def check(self) -> tuple[bool, str]:
        """Return ``(healthy, detail)``."""


class FunctionProbe(Probe):
    """Wrap a callable returning a bool or a ``(bool, detail)`` tuple."""

    def __init__(self, name: str, func: Callable[[], bool | tuple[bool, str]]) -> None:
        self.name = name
        self._func = func

    def check(self) -> tuple[bool, str]:
        result = self._func()
        if isinstance(result, tuple):
            return bool(result[0]), str(result[1])
        return bool(result), "ok" if result else "failed"


class HttpProbe(Probe):
    """HTTP GET that must answer with *expected_status*."""

    def __init__(
        self,
        url: str,
        name: str = "app",
        timeout: float = 10,
        expected_status: int = 200,
    ) -> None:
        self.name = name
        self.url = url
        self.timeout = timeout
        self.expected_status = expected_status

    def check(self) -> tuple[bool, str]:
        try:
            resp = requests.get(self.url, timeout=self.timeout)
        except requests.RequestException as exc:
            return False, f"unreachable: {exc}"
        return resp.status_code == self.expected_status, f"HTTP {resp.status_code}"


class ServiceCommandProbe(Probe):
    """Command executed inside a compose service must exit 0.

    When *expect* is given the command output must also contain it
    (e.g. ``PONG`` for ``redis-cli ping``).
    """

    def __init__(
        self,
        name: str,
        runtime: ComposeRuntime,
        service: str,
        command: Sequence[str],
        expect: str | None = None,
    ) -> None:
        self.name = name
        self.runtime = runtime
        self.service = service
        self.command = list(command)
        self.expect = expect

    def check(self) -> tuple[bool, str]:
        result = self.runtime.exec_in_service(self.service, self.command)
        if not result.ok:
            return False, f"down (exit {result.exit_code})"
        if self.expect is not None and self.expect not in result.stdout:
            return False, f"down (unexpected reply: {result.stdout.strip()[:60]})"
        return True, "ready"


class DiskSpaceProbe(Probe):
    """Disk usage of *path* must stay below *threshold* percent."""

    def __init__(self, path: str = "/", threshold: float = 90, name: str = "disk") -> None:
        self.name = name
        self.path = path
        self.threshold = threshold

    def check(self) -> tuple[bool, str]:
        usage = shutil.disk_usage(self.path)
        percent = usage.used * 100 / usage.total if usage.total else 0.0
        if percent < self.threshold:
            return True, f"Disk usage: {percent:.0f}%"
        return False, f"High disk usage: {percent:.0f}%"


class MemoryProbe(Probe):
    """Memory usage must stay below *threshold* percent."""

    def __init__(self, threshold: float = 90, name: str = "memory") -> None:
        self.name = name
        self.threshold = threshold

    def check(self) -> tuple[bool, str]:
        percent = psutil.virtual_memory().percent
        if percent < self.threshold:
            return True, f"Memory usage: {percent:.0f}%"
        return False, f"High memory usage: {percent:.0f}%"


class SslCertificateProbe(Probe):
    """TLS certificate of *domain* must stay valid for *min_days*.

    An unreachable host is reported as skipped (healthy).
    """

    def __init__(
        self,
        domain: str,
        port: int = 443,
        min_days: int = 30,
        timeout: float = 10,
        name: str = "ssl",
    ) -> None:
        self.name = name
        self.domain = domain
        self.port = port
        self.min_days = min_days
        self.timeout = timeout

    def check(self) -> tuple[bool, str]:
        try:
            not_after = self._fetch_not_after()
        except ssl.SSLCertVerificationError as exc:
            return False, f"SSL certificate invalid: {exc.verify_message}"
        except OSError as exc:
            return True, f"SSL check skipped: {exc}"
        if not not_after:
            return True, "SSL check skipped: no certificate expiry"

        days_left = int((ssl.cert_time_to_seconds(not_after) - time.time()) // 86400)
        if days_left > self.min_days:
            return True, f"SSL valid for {days_left} days"
        if days_left > 0:
            return False, f"SSL expires in {days_left} days"
        return False, "SSL certificate expired"

    def _fetch_not_after(self) -> str | None:
        context = ssl.create_default_context()
        with socket.create_connection((self.domain, self.port), timeout=self.timeout) as sock:
            with context.wrap_socket(sock, server_hostname=self.domain) as tls:
                cert = tls.getpeercert() or {}
        return cert.get("notAfter")
