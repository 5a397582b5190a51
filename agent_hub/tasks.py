"""Fire-and-forget execution of side effects such as metrics and CRM sync."""
from __future__ import annotations

import logging
import threading
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Set

LOGGER = logging.getLogger(__name__)


class BackgroundTasks:
    """Small worker pool whose task failures are logged and never re-raised."""

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="agent-hub-bg")
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._closed = False
        self.completed = 0
        self.failed = 0

    def submit(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Future]:
        with self._lock:
            if self._closed:
                LOGGER.debug("Background pool closed, dropping task %s", name)
                return None
            future = self._executor.submit(self._run, name, func, args, kwargs)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _run(self, name: str, func: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        try:
            func(*args, **kwargs)
        except Exception:
            LOGGER.exception("Background task %s failed", name)
            with self._lock:
                self.failed += 1
        else:
            with self._lock:
                self.completed += 1

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for every queued task; return ``True`` when none is left running."""

        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


__all__ = ["BackgroundTasks"]
