"""
Notification channel for user-facing messages and library events.

The engine never talks to a UI directly. It publishes notifications to a
single channel that the host owns; subscribers decide how to surface them
(toast, status bar, console). A default subscriber forwards everything to
the log.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List


logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    """Severity of a user-facing notification."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    EVENT = "event"


SNAPSHOTS_CHANGED = "snapshots_changed"

_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
    NotificationLevel.EVENT: logging.DEBUG,
}


@dataclass
class Notification:
    """A single message published on the channel."""
    level: NotificationLevel
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_event(self) -> bool:
        return self.level == NotificationLevel.EVENT


Subscriber = Callable[[Notification], None]


def log_subscriber(notification: Notification) -> None:
    """Default subscriber: write every notification to the log."""
    logger.log(
        _LOG_LEVELS.get(notification.level, logging.INFO),
        f"[{notification.level.value}] {notification.message}",
    )


class NotificationChannel:
    """
    Fire-and-forget publish/subscribe channel.

    Publishing never raises: a failing subscriber is logged and skipped so
    that a broken UI hook cannot fail an import or export.
    """

    def __init__(self, log_notifications: bool = True):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        if log_notifications:
            self.subscribe(log_subscriber)

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, notification: Notification) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(notification)
            except Exception as e:
                logger.warning(f"Notification subscriber failed: {e}")

    def info(self, message: str) -> None:
        self.publish(Notification(NotificationLevel.INFO, message))

    def success(self, message: str) -> None:
        self.publish(Notification(NotificationLevel.SUCCESS, message))

    def warning(self, message: str) -> None:
        self.publish(Notification(NotificationLevel.WARNING, message))

    def error(self, message: str) -> None:
        self.publish(Notification(NotificationLevel.ERROR, message))

    def snapshots_changed(self) -> None:
        """Signal UI layers that the set of snapshots (or their contents) changed."""
        self.publish(Notification(NotificationLevel.EVENT, SNAPSHOTS_CHANGED))


class RecordingSubscriber:
    """Subscriber that keeps every notification it receives, in order."""

    def __init__(self):
        self.notifications: List[Notification] = []

    def __call__(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def messages(self, level: NotificationLevel) -> List[str]:
        return [n.message for n in self.notifications if n.level == level]

    def event_count(self, name: str = SNAPSHOTS_CHANGED) -> int:
        return sum(1 for n in self.notifications if n.is_event and n.message == name)
