"""NotificationBridge: where terminal, user-facing errors are sent."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger

from dashsync.errors import SyncError


@dataclass(frozen=True, slots=True)
class Notification:
    type: str  # 'error' | 'warning' | 'info'
    message: str
    code: str
    status: int | None = None
    request_id: str | None = None
    duration_ms: int = 5000

    @classmethod
    def from_error(cls, error: SyncError) -> "Notification":
        return cls(
            type="error",
            message=error.message,
            code=error.code,
            status=getattr(error, "status", None),
            request_id=error.request_id,
        )


@runtime_checkable
class NotificationBridge(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LogNotificationBridge:
    """Sends notifications to the log. Default for headless use."""

    def notify(self, notification: Notification) -> None:
        logger.warning(f"[{notification.code}] {notification.message}")


class CollectingNotificationBridge:
    """Keeps notifications in memory."""

    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def clear(self) -> None:
        self.notifications.clear()
