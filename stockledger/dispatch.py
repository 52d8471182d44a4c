"""Fire-and-forget execution of post-commit maintenance work."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class MaintenanceDispatcher(Protocol):
    """Runs maintenance callables without the caller awaiting them."""

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Schedule ``fn(*args, **kwargs)``."""

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; optionally wait for in-flight tasks."""


class InlineDispatcher:
    """Runs work synchronously on the calling thread; used by tests and the CLI."""

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("Maintenance task %s failed.", getattr(fn, "__qualname__", fn))

    def shutdown(self, wait: bool = True) -> None:
        return None


class ThreadPoolDispatcher:
    """Runs work on a bounded thread pool; tasks are not cancellable."""

    def __init__(self, *, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ledger-maintenance")

    @staticmethod
    def _log_failure(future: Future[Any]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Maintenance task failed: %s", exc, exc_info=exc)

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(self._log_failure)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=False)
