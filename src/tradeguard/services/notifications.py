from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    title: str
    message: str
    severity: str = "info"
    details: dict[str, object] = field(default_factory=dict)


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    _LEVELS = {
        "info": logging.INFO,
        "warning": logging.WARNING,
        "high": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def notify(self, notification: Notification) -> None:
        logger.log(
            self._LEVELS.get(notification.severity, logging.WARNING),
            "operator_notification",
            extra={
                "extra": {
                    "title": notification.title,
                    "notification": notification.message,
                    "severity": notification.severity,
                    **notification.details,
                }
            },
        )


class RecordingNotifier:
    """Keeps notifications in memory. Used by tests and the CLI dry paths."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.sent.append(notification)
