"""
Logging utilities for snapvault.

Log lines emitted while an import, export, capture or migration runs carry
the fields of the active OperationContext (which operation, which
snapshot, which file map node, which background task). The context is
held in a ``ContextVar``, so tasks running on different worker threads
never see each other's fields.
"""

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional


CONTEXT_FIELDS = ("operation", "snapshot", "node_id", "task")

_context: ContextVar[Dict[str, Any]] = ContextVar("snapvault_operation_context", default={})


def _context_items(record: logging.LogRecord):
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            yield name, value


class OperationContextFilter(logging.Filter):
    """Copy the active operation context onto records that lack those fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in OperationContext.get_current().items():
            if not hasattr(record, name):
                setattr(record, name, value)
        return True


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line: level, logger, message, optional timestamp,
    any context fields present and the formatted exception.
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_timestamp:
            entry["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()

        entry.update(_context_items(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``TIMESTAMP [LEVEL] LOGGER - MESSAGE [operation=X snapshot=Y ...]``"""

    def __init__(self, include_timestamp: bool = True):
        prefix = "%(asctime)s " if include_timestamp else ""
        super().__init__(f"{prefix}[%(levelname)s] %(name)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = " ".join(f"{name}={value}" for name, value in _context_items(record))
        return f"{line} [{fields}]" if fields else line


def configure_logging(
    level: int = logging.INFO,
    structured: bool = False,
    include_timestamp: bool = True,
) -> None:
    """
    Configure the ``snapvault`` package logger.

    Only adds a handler if none exists, so repeated calls (CLI re-entry,
    tests) do not duplicate output.

    Args:
        level: Logging level (default: INFO)
        structured: If True, output JSON lines; otherwise human-readable
        include_timestamp: Whether to include timestamps
    """
    package_logger = logging.getLogger("snapvault")
    package_logger.setLevel(level)
    if package_logger.handlers:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(OperationContextFilter())
    if structured:
        handler.setFormatter(StructuredFormatter(include_timestamp=include_timestamp))
    else:
        handler.setFormatter(HumanReadableFormatter(include_timestamp=include_timestamp))
    package_logger.addHandler(handler)


class OperationContext:
    """
    Context manager that adds fields to the active operation context.

    Nested contexts inherit the enclosing fields and override the ones they
    set; leaving a context restores exactly what was active before it.

    Example:
        >>> with OperationContext(operation="import", snapshot="Alice"):
        ...     with OperationContext(node_id=node.id):
        ...         log_with_context(logger, logging.INFO, "Extracting files")
    """

    def __init__(self, operation: Optional[str] = None, snapshot: Optional[str] = None, **extra: Any):
        fields = {"operation": operation, "snapshot": snapshot, **extra}
        self.context = {k: v for k, v in fields.items() if v is not None}
        self._token: Optional[Token] = None

    def __enter__(self) -> "OperationContext":
        self._token = _context.set({**_context.get(), **self.context})
        return self

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _context.reset(self._token)
            self._token = None

    @staticmethod
    def get_current() -> Dict[str, Any]:
        """Fields of the active context (a copy)."""
        return dict(_context.get())


def log_with_context(logger: logging.Logger, level: int, message: str, **extra: Any) -> None:
    """Log ``message`` with the active context fields plus ``extra``."""
    context = OperationContext.get_current()
    context.update(extra)
    logger.log(level, message, extra=context)
