"""
Task Dispatchers

Running a leased job takes minutes; the HTTP trigger that leased it must
answer at once.  A dispatcher gives that background run an explicit
lifecycle (a Future) instead of relying on the platform keeping the
process alive after the response.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class InlineDispatcher:
    """Runs the task in the caller.  Used by the CLI and by tests."""

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001 - surfaced through the Future
            future.set_exception(exc)
        return future

    def wait(self, timeout: Optional[float] = None) -> bool:
        return True

    def shutdown(self) -> None:
        pass


class BackgroundDispatcher:
    """Runs tasks on a single background thread.

    One thread matches the queue's at-most-one-in-flight model; a second
    submission simply waits its turn.
    """

    def __init__(self, max_workers: int = 1) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="nipr-job"
        )
        self._futures: List[Future] = []

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(self._log_failure)
        self._futures = [f for f in self._futures if not f.done()]
        self._futures.append(future)
        return future

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted task settles.  True if all did."""
        _done, not_done = wait(list(self._futures), timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Background task failed: %s", exc)
