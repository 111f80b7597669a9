"""Notification providers — console, Slack webhook, email."""

from __future__ import annotations

import abc
import logging
import smtplib
from email.message import EmailMessage
from typing import Any

import requests

logger = logging.getLogger(__name__)


class NotificationProvider(abc.ABC):
    """Abstract notification channel."""

    @abc.abstractmethod
    def notify(self, event: dict[str, Any]) -> bool:
        """Deliver a deployment event.

        Parameters
        ----------
        event:
            Event dict with keys: status, app, environment, sha,
            message, timestamp.

        Returns True if the notification was delivered.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Return True if the provider is configured to send."""


class ConsoleNotifier(NotificationProvider):
    """Always-available provider that writes events to the log."""

    def __init__(self) -> None:
        self._log: list[dict[str, Any]] = []

    def notify(self, event: dict[str, Any]) -> bool:
        self._log.append(event)
        logger.info(format_event(event))
        return True

    def is_available(self) -> bool:
        return True

    @property
    def log(self) -> list[dict[str, Any]]:
        """Events delivered so far."""
        return list(self._log)


class SlackNotifier(NotificationProvider):
    """Slack incoming-webhook provider."""

    def __init__(self, webhook_url: str | None = None, timeout: float = 10) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout

    def is_available(self) -> bool:
        return bool(self._webhook_url)

    def notify(self, event: dict[str, Any]) -> bool:
        payload = {"text": format_event(event)}
        resp = requests.post(self._webhook_url, json=payload, timeout=self._timeout)
        if resp.status_code != 200:
            logger.warning("Slack webhook returned HTTP %s", resp.status_code)
            return False
        return True


class EmailNotifier(NotificationProvider):
    """Mail alert for failed deployments only."""

    def __init__(
        self,
        recipient: str | None = None,
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        sender: str = "deploykit@localhost",
    ) -> None:
        self._recipient = recipient
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._sender = sender

    def is_available(self) -> bool:
        return bool(self._recipient)

    def notify(self, event: dict[str, Any]) -> bool:
        if event.get("status") != "FAILED":
            return True

        msg = EmailMessage()
        msg["Subject"] = f"Deployment Alert: {event.get('app', '')}"
        msg["From"] = self._sender
        msg["To"] = self._recipient
        msg.set_content(
            f"Deployment failed for {event.get('app', '')} "
            f"({event.get('environment', '')})\n{event.get('message', '')}"
        )
        with smtplib.SMTP(self._smtp_host, self._smtp_port, timeout=10) as smtp:
            smtp.send_message(msg)
        return True


def format_event(event: dict[str, Any]) -> str:
    """Format a deployment event as a chat message."""
    status = event.get("status", "UNKNOWN")
    app = event.get("app", "")
    environment = event.get("environment", "")
    text = f"Deployment {status}: {app} ({environment})"
    message = event.get("message", "")
    if message:
        text += f"\n{message}"
    sha = event.get("sha", "")
    if sha:
        text += f"\nSHA: {sha}"
    return text
