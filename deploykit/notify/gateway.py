"""NotifierGateway — best-effort fan-out of deployment outcomes."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel

from deploykit.notify.providers import ConsoleNotifier, NotificationProvider

logger = logging.getLogger(__name__)


class DeployStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class NotificationFailure(BaseModel):
    """A delivery that did not go through."""

    provider: str
    status: DeployStatus
    detail: str


class NotifierGateway:
    """Send deployment outcomes to every configured provider.

    Delivery is fire-and-forget: failures are logged and recorded in
    :attr:`failures`, never raised and never retried.  A
    :class:`ConsoleNotifier` is always included.
    """

    def __init__(
        self,
        providers: list[NotificationProvider] | None = None,
        app_name: str = "",
        environment: str = "",
        sha: str = "",
    ) -> None:
        self._console = ConsoleNotifier()
        self._providers: list[NotificationProvider] = [self._console]
        if providers:
            self._providers.extend(providers)
        self.app_name = app_name
        self.environment = environment
        self.sha = sha
        self._failures: list[NotificationFailure] = []

    def add_provider(self, provider: NotificationProvider) -> None:
        self._providers.append(provider)

    @property
    def console(self) -> ConsoleNotifier:
        return self._console

    @property
    def failures(self) -> list[NotificationFailure]:
        return list(self._failures)

    def send(self, status: DeployStatus, message: str) -> None:
        """Dispatch *status* and *message* to all available providers."""
        event = self._make_event(status, message)
        for provider in self._providers:
            if not provider.is_available():
                continue
            name = type(provider).__name__
            try:
                delivered = provider.notify(event)
            except Exception as exc:
                self._record(name, status, str(exc))
                continue
            if not delivered:
                self._record(name, status, "delivery rejected")

    def _record(self, provider: str, status: DeployStatus, detail: str) -> None:
        logger.warning("Notification provider %s failed: %s", provider, detail)
        self._failures.append(
            NotificationFailure(provider=provider, status=status, detail=detail)
        )

    def _make_event(self, status: DeployStatus, message: str) -> dict[str, Any]:
        return {
            "status": DeployStatus(status).value,
            "app": self.app_name,
            "environment": self.environment,
            "sha": self.sha,
            "message": message,
            "timestamp": time.time(),
        }
