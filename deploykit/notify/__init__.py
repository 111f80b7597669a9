"""Deployment notifications."""

from deploykit.notify.gateway import DeployStatus, NotificationFailure, NotifierGateway
from deploykit.notify.providers import (
    ConsoleNotifier,
    EmailNotifier,
    NotificationProvider,
    SlackNotifier,
    format_event,
)

__all__ = [
    "ConsoleNotifier",
    "DeployStatus",
    "EmailNotifier",
    "NotificationFailure",
    "NotificationProvider",
    "NotifierGateway",
    "SlackNotifier",
    "format_event",
]
