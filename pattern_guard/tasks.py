"""
Bounded worker pool for file events and enforcement queries.

Keyed submissions replace each other: submitting work for a key whose
previous task has not started yet cancels that task.  Work that is already
running is not interrupted; the indexer's per-path generation counter makes
its result stale instead.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Callable, Optional

from .errors import QueryTimeout

logger = logging.getLogger(__name__)


class TaskRunner:
    """Thin wrapper around :class:`~concurrent.futures.ThreadPoolExecutor`."""

    def __init__(self, max_workers: int = 4, name: str = "pattern-guard") -> None:
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix=name,
        )
        self._lock = threading.Lock()
        self._keyed: dict[str, concurrent.futures.Future] = {}
        self._outstanding: set[concurrent.futures.Future] = set()
        self._closed = False

    def submit(self, fn: Callable, *args, key: Optional[str] = None, **kwargs) -> concurrent.futures.Future:
        """Schedule ``fn(*args, **kwargs)``; cancels pending work with the same *key*."""
        with self._lock:
            if self._closed:
                raise RuntimeError("TaskRunner is shut down")
            if key is not None:
                previous = self._keyed.get(key)
                if previous is not None and previous.cancel():
                    logger.debug("[tasks] Cancelled pending task for %s", key)
            future = self._executor.submit(self._run, fn, args, kwargs)
            self._outstanding.add(future)
            if key is not None:
                self._keyed[key] = future
        future.add_done_callback(lambda f, k=key: self._done(f, k))
        return future

    @staticmethod
    def _run(fn, args, kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("[tasks] Task %s failed", getattr(fn, "__name__", fn))
            raise

    def _done(self, future: concurrent.futures.Future, key: Optional[str]) -> None:
        with self._lock:
            self._outstanding.discard(future)
            if key is not None and self._keyed.get(key) is future:
                del self._keyed[key]

    def run_with_timeout(self, fn: Callable, timeout: Optional[float], *args, **kwargs):
        """
        Run *fn* on the pool and wait at most *timeout* seconds.

        Raises
        ------
        QueryTimeout
            If the result is not ready in time (the task is cancelled if it
            has not started).
        """
        future = self.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise QueryTimeout(f"task exceeded {timeout}s") from exc

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted task has finished; False on timeout."""
        with self._lock:
            pending = set(self._outstanding)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        if not_done:
            return False
        # Tasks may have scheduled follow-up work while we waited
        return self.wait_idle(timeout)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._outstanding)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
