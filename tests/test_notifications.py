"""Tests for notification providers and the NotifierGateway."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch

import requests

from deploykit.notify.gateway import DeployStatus, NotifierGateway
from deploykit.notify.providers import (
    ConsoleNotifier,
    EmailNotifier,
    NotificationProvider,
    SlackNotifier,
    format_event,
)


class RecordingProvider(NotificationProvider):
    def __init__(self, result: bool = True, available: bool = True) -> None:
        self.events: list[dict[str, Any]] = []
        self.result = result
        self.available = available

    def notify(self, event: dict[str, Any]) -> bool:
        self.events.append(event)
        return self.result

    def is_available(self) -> bool:
        return self.available


def _event(status: str = "FAILED") -> dict[str, Any]:
    return {
        "status": status,
        "app": "shop",
        "environment": "production",
        "sha": "abc123",
        "message": "Deployment failed at step: build_image",
        "timestamp": 0.0,
    }


# ── Providers ────────────────────────────────────────────────────────────────

class TestProviders:

    def test_format_event(self):
        text = format_event(_event())
        assert text.splitlines() == [
            "Deployment FAILED: shop (production)",
            "Deployment failed at step: build_image",
            "SHA: abc123",
        ]

    def test_console_records_events(self):
        console = ConsoleNotifier()
        assert console.notify(_event("SUCCESS"))
        assert console.log[0]["status"] == "SUCCESS"

    def test_slack_unavailable_without_url(self):
        assert SlackNotifier().is_available() is False
        assert SlackNotifier("https://hooks.slack.test/x").is_available() is True

    def test_slack_posts_text_payload(self):
        with patch("deploykit.notify.providers.requests.post",
                   return_value=MagicMock(status_code=200)) as post:
            assert SlackNotifier("https://hooks.slack.test/x").notify(_event())
            args, kwargs = post.call_args
            assert args[0] == "https://hooks.slack.test/x"
            assert kwargs["json"]["text"].startswith("Deployment FAILED: shop")

    def test_slack_rejects_non_200(self):
        with patch("deploykit.notify.providers.requests.post",
                   return_value=MagicMock(status_code=500)):
            assert SlackNotifier("https://hooks.slack.test/x").notify(_event()) is False

    def test_email_only_for_failures(self):
        with patch("deploykit.notify.providers.smtplib.SMTP") as smtp:
            assert EmailNotifier("ops@example.com").notify(_event("SUCCESS"))
            smtp.assert_not_called()

    def test_email_sends_alert(self):
        with patch("deploykit.notify.providers.smtplib.SMTP") as smtp:
            assert EmailNotifier("ops@example.com", smtp_host="mail.local").notify(_event())
            smtp.assert_called_once_with("mail.local", 25, timeout=10)
            message = smtp.return_value.__enter__.return_value.send_message.call_args[0][0]
            assert message["Subject"] == "Deployment Alert: shop"
            assert message["To"] == "ops@example.com"


# ── Gateway ──────────────────────────────────────────────────────────────────

class TestNotifierGateway:

    def test_console_always_included(self):
        gateway = NotifierGateway(app_name="shop", environment="staging", sha="abc")
        gateway.send(DeployStatus.SUCCESS, "Deployment completed successfully")
        event = gateway.console.log[0]
        assert event["status"] == "SUCCESS"
        assert event["app"] == "shop"
        assert event["environment"] == "staging"
        assert event["sha"] == "abc"

    def test_fans_out_to_available_providers(self):
        on, off = RecordingProvider(), RecordingProvider(available=False)
        gateway = NotifierGateway([on, off])
        gateway.send(DeployStatus.FAILED, "boom")
        assert len(on.events) == 1
        assert off.events == []

    def test_rejected_delivery_recorded(self):
        gateway = NotifierGateway([RecordingProvider(result=False)])
        gateway.send(DeployStatus.FAILED, "boom")
        assert len(gateway.failures) == 1
        assert gateway.failures[0].provider == "RecordingProvider"
        assert gateway.failures[0].detail == "delivery rejected"

    def test_transport_error_never_raises(self):
        later = RecordingProvider()
        slack = SlackNotifier("https://hooks.slack.test/x")
        gateway = NotifierGateway([slack, later])
        with patch("deploykit.notify.providers.requests.post",
                   side_effect=requests.ConnectionError("no route")):
            gateway.send(DeployStatus.FAILED, "boom")
        assert gateway.failures[0].provider == "SlackNotifier"
        assert "no route" in gateway.failures[0].detail
        # Remaining providers still notified
        assert len(later.events) == 1
