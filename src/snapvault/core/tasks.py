"""
Background task runner.

Imports, exports and migration passes are long-running file and archive
work. The engine itself is synchronous; this module lets a host run those
operations on worker threads and collect a result-or-error value instead of
relying on callbacks. There is no cancellation: a submitted task runs to
completion or failure.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .logging import OperationContext


logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    """Outcome of a background task."""
    name: str
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error is not None else ""


class TaskHandle:
    """Handle to a submitted task."""

    def __init__(self, name: str, future: Future):
        self.name = name
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def wait(self, timeout: Optional[float] = None) -> TaskResult:
        """
        Block until the task finishes and return its outcome.

        Exceptions raised by the task are captured in the result, never
        re-raised here.
        """
        try:
            value = self._future.result(timeout=timeout)
        except FutureTimeoutError:
            raise
        except Exception as e:
            return TaskResult(name=self.name, ok=False, error=e)
        return TaskResult(name=self.name, ok=True, value=value)


class TaskRunner:
    """
    Thread-pool backed runner for independent snapshot operations.

    Example:
        >>> with TaskRunner(max_workers=2) as runner:
        ...     handle = runner.submit("export", exporter.export, snapshot_dir)
        ...     result = handle.wait()
    """

    def __init__(self, max_workers: int = 2):
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="snapvault",
        )
        self._handles: List[TaskHandle] = []

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> TaskHandle:
        """Run ``fn(*args, **kwargs)`` on a worker thread."""
        logger.debug(f"Submitting task: {name}")
        future = self._executor.submit(self._run, name, fn, *args, **kwargs)
        handle = TaskHandle(name, future)
        self._handles.append(handle)
        return handle

    @staticmethod
    def _run(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with OperationContext(task=name):
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                logger.error(f"Task {name} failed: {e}", exc_info=True, extra=OperationContext.get_current())
                raise

    def wait_all(self) -> List[TaskResult]:
        """Wait for every submitted task and return their results in submission order."""
        return [handle.wait() for handle in self._handles]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "TaskRunner":
        return self

    def __exit__(self, *args) -> None:
        self.shutdown(wait=True)
