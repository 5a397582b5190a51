"""Per-contact mutual exclusion for lead-state mutations."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterator, Optional

from .config import LockSettings
from .models import LockResult, LockStatus
from .phone import normalize_contact_id

LOGGER = logging.getLogger(__name__)


class LockTimeoutError(RuntimeError):
    """Raised by :meth:`ContactLockManager.hold` when the lock cannot be taken."""


def _generate_lock_id() -> str:
    return f"lock_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass
class _LockEntry:
    lock_id: str
    operation: str
    acquired_at: float
    depth: int = 1


@dataclass
class _Waiter:
    lock_id: str
    operation: str
    enqueued_at: float


class ContactLockManager:
    """Exclusive, expiring locks keyed by normalised contact identifier.

    Waiters queue in FIFO order and poll every ``poll_interval`` seconds; a
    waiter is granted the lock only when the lock is free and it is at the
    head of its contact's queue. Locks older than ``ttl_seconds`` are treated
    as abandoned and reclaimed.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 30.0,
        max_wait_seconds: float = 60.0,
        poll_interval: float = 0.1,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = float(ttl_seconds)
        self._max_wait = float(max_wait_seconds)
        self._poll_interval = float(poll_interval)
        self._sweep_interval = float(sweep_interval)
        self._clock = clock
        self._mutex = threading.Lock()
        self._locks: Dict[str, _LockEntry] = {}
        self._queues: Dict[str, Deque[_Waiter]] = {}
        self._counters = {
            "acquired": 0,
            "released": 0,
            "expired": 0,
            "nested": 0,
            "wait_timeouts": 0,
            "mismatches": 0,
        }
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    @classmethod
    def from_settings(cls, settings: LockSettings) -> "ContactLockManager":
        return cls(
            ttl_seconds=settings.ttl_seconds,
            max_wait_seconds=settings.max_wait_seconds,
            poll_interval=settings.poll_interval_seconds,
            sweep_interval=settings.sweep_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------
    def acquire(self, contact_id: str, operation: str = "unknown", *, within: Optional[str] = None) -> LockResult:
        """Take the lock for ``contact_id``, waiting up to ``max_wait_seconds``.

        ``within`` is the lock id of a critical section the caller already
        holds for this contact; the acquisition then nests inside it.
        """

        if not contact_id:
            return LockResult(acquired=False, error="invalid_contact")

        key = normalize_contact_id(contact_id)

        with self._mutex:
            entry = self._current_entry(key)
            if within is not None and entry is not None and entry.lock_id == within:
                entry.depth += 1
                self._counters["nested"] += 1
                LOGGER.debug("%s: nested lock for %s (depth %s)", operation, key, entry.depth)
                return LockResult(acquired=True, lock_id=entry.lock_id)

            lock_id = _generate_lock_id()
            queue = self._queues.get(key)
            if entry is None and not queue:
                return self._grant(key, lock_id, operation)

            waiter = _Waiter(lock_id=lock_id, operation=operation, enqueued_at=self._clock())
            self._queues.setdefault(key, deque()).append(waiter)
            holder = entry.operation if entry else "queue"
            LOGGER.info("%s: waiting for lock on %s (holder: %s)", operation, key, holder)

        deadline = waiter.enqueued_at + self._max_wait
        while True:
            with self._mutex:
                entry = self._current_entry(key)
                queue = self._queues.get(key)
                at_head = bool(queue) and queue[0] is waiter
                if entry is None and at_head:
                    queue.popleft()
                    if not queue:
                        del self._queues[key]
                    return self._grant(key, lock_id, operation)
                if self._clock() >= deadline:
                    self._discard_waiter(key, waiter)
                    self._counters["wait_timeouts"] += 1
                    LOGGER.warning("%s: timed out waiting for lock on %s", operation, key)
                    return LockResult(acquired=False, error="timeout")
            time.sleep(self._poll_interval)

    def _grant(self, key: str, lock_id: str, operation: str) -> LockResult:
        self._locks[key] = _LockEntry(lock_id=lock_id, operation=operation, acquired_at=self._clock())
        self._counters["acquired"] += 1
        LOGGER.info("%s: lock acquired for %s (id: %s)", operation, key, lock_id[-8:])
        return LockResult(acquired=True, lock_id=lock_id)

    def _current_entry(self, key: str) -> Optional[_LockEntry]:
        # Caller holds self._mutex.
        entry = self._locks.get(key)
        if entry is not None and self._is_expired(entry):
            LOGGER.warning("Lock for %s expired (holder: %s), releasing", key, entry.operation)
            del self._locks[key]
            self._counters["expired"] += 1
            return None
        return entry

    def _is_expired(self, entry: _LockEntry) -> bool:
        return self._clock() - entry.acquired_at > self._ttl

    def _discard_waiter(self, key: str, waiter: _Waiter) -> None:
        queue = self._queues.get(key)
        if not queue:
            return
        try:
            queue.remove(waiter)
        except ValueError:
            pass
        if not queue:
            del self._queues[key]

    # ------------------------------------------------------------------
    # Release & inspection
    # ------------------------------------------------------------------
    def release(self, contact_id: str, lock_id: Optional[str]) -> bool:
        """Release the lock if ``lock_id`` identifies its current holder."""

        if not contact_id:
            return False

        key = normalize_contact_id(contact_id)
        with self._mutex:
            entry = self._locks.get(key)
            if entry is None:
                LOGGER.warning("Attempt to release missing lock for %s", key)
                return False
            if entry.lock_id != lock_id:
                self._counters["mismatches"] += 1
                LOGGER.warning(
                    "Lock mismatch for %s: expected %s, found %s",
                    key,
                    (lock_id or "")[-8:],
                    entry.lock_id[-8:],
                )
                return False
            if entry.depth > 1:
                entry.depth -= 1
                return True
            del self._locks[key]
            self._counters["released"] += 1
            duration = self._clock() - entry.acquired_at
        LOGGER.info("%s: lock released for %s (%.3fs)", entry.operation, key, duration)
        return True

    @contextmanager
    def hold(self, contact_id: str, operation: str = "unknown") -> Iterator[str]:
        """Context manager that yields the lock id and always releases it."""

        result = self.acquire(contact_id, operation)
        if not result.acquired:
            raise LockTimeoutError(f"Could not acquire lock for {contact_id}: {result.error}")
        try:
            yield result.lock_id  # type: ignore[misc]
        finally:
            self.release(contact_id, result.lock_id)

    def is_locked(self, contact_id: str) -> LockStatus:
        if not contact_id:
            return LockStatus(locked=False)

        key = normalize_contact_id(contact_id)
        with self._mutex:
            entry = self._locks.get(key)
            if entry is None:
                return LockStatus(locked=False)
            if self._current_entry(key) is None:
                return LockStatus(locked=False, expired=True)
            return LockStatus(
                locked=True,
                operation=entry.operation,
                age=round(self._clock() - entry.acquired_at, 3),
                lock_id=entry.lock_id[-8:],
            )

    def stats(self) -> Dict[str, object]:
        with self._mutex:
            now = self._clock()
            return {
                "active_locks": len(self._locks),
                "waiting_in_queue": sum(len(queue) for queue in self._queues.values()),
                "locks": [
                    {
                        "contact": f"{key[:8]}...",
                        "operation": entry.operation,
                        "age": round(now - entry.acquired_at, 1),
                    }
                    for key, entry in self._locks.items()
                ],
                **self._counters,
            }

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------
    def cleanup_expired(self) -> int:
        """Clear expired locks and stale waiters; return the number of locks cleared."""

        cleaned = 0
        with self._mutex:
            for key in list(self._locks):
                if self._current_entry(key) is None:
                    cleaned += 1
            now = self._clock()
            for key in list(self._queues):
                queue = self._queues[key]
                for waiter in [w for w in queue if now - w.enqueued_at > self._max_wait]:
                    queue.remove(waiter)
                if not queue:
                    del self._queues[key]
        if cleaned:
            LOGGER.info("Cleanup: %s expired locks removed", cleaned)
        return cleaned

    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_sweeper.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="contact-lock-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self._sweep_interval + 1.0)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop_sweeper.wait(self._sweep_interval):
            try:
                self.cleanup_expired()
            except Exception:  # pragma: no cover - the sweeper must never die
                LOGGER.exception("Contact lock sweep failed")


__all__ = ["ContactLockManager", "LockTimeoutError"]
