"""User notification sink for member operations.

The gateway emits exactly one notification per user-initiated operation: one
success or error for a single mutation, one summary for a bulk run.
"""

from dataclasses import dataclass
from typing import Protocol

from libs.common.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def success(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggingNotifier:
    """Default sink for headless use: notifications go to the service log."""

    def success(self, message: str) -> None:
        logger.info("Notify success: %s", message)

    def warning(self, message: str) -> None:
        logger.warning("Notify warning: %s", message)

    def error(self, message: str) -> None:
        logger.error("Notify error: %s", message)


@dataclass(frozen=True)
class Notification:
    level: str
    message: str


class RecordingNotifier:
    """Keeps every notification in order, for assertions in tests."""

    def __init__(self):
        self.notifications: list[Notification] = []

    def success(self, message: str) -> None:
        self.notifications.append(Notification("success", message))

    def warning(self, message: str) -> None:
        self.notifications.append(Notification("warning", message))

    def error(self, message: str) -> None:
        self.notifications.append(Notification("error", message))

    def of_level(self, level: str) -> list[str]:
        return [n.message for n in self.notifications if n.level == level]

    def clear(self) -> None:
        self.notifications.clear()
