"""
Core building blocks shared by every snapvault component.

- Exceptions: the error taxonomy (NotASnapshot, CorruptChain, ...)
- Logging: formatters and operation context
- Notifications: the user-facing message and event channel
- Tasks: background execution with result/error handles
"""

from .exceptions import (
    SnapVaultError,
    NotASnapshot,
    CorruptChain,
    ContainerFormatError,
    UnsupportedContainerVersion,
    TruncatedPayload,
    BackupFailed,
    ConcurrentExportRejected,
    ConfigError,
)
from .notify import Notification, NotificationChannel, NotificationLevel, SNAPSHOTS_CHANGED
from .tasks import TaskHandle, TaskResult, TaskRunner

__all__ = [
    "SnapVaultError",
    "NotASnapshot",
    "CorruptChain",
    "ContainerFormatError",
    "UnsupportedContainerVersion",
    "TruncatedPayload",
    "BackupFailed",
    "ConcurrentExportRejected",
    "ConfigError",
    "Notification",
    "NotificationChannel",
    "NotificationLevel",
    "SNAPSHOTS_CHANGED",
    "TaskHandle",
    "TaskResult",
    "TaskRunner",
]
