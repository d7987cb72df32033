"""
Per-record mutual exclusion

Payment application and schedule regeneration both read the schedule and the
outstanding amount and then write them back. Two such operations on the same
loan must never interleave; operations on different loans are independent.
"""

import threading
import logging
from contextlib import contextmanager
from typing import Dict

from .errors import ConcurrentModificationError


logger = logging.getLogger("emi_engine.locks")


class _KeyLock:
    """A lock plus the number of callers holding or waiting for it"""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class LoanLockManager:
    """
    Hands out one lock per record id (loan or lending).

    An entry exists only while some caller holds or waits for it, so the
    table never outgrows the records currently in use.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, _KeyLock] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _KeyLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def lock(self, key: str):
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            ConcurrentModificationError: another operation on the same record
                held the lock for longer than the timeout
        """
        entry = self._checkout(key)
        if not entry.lock.acquire(timeout=self.timeout_seconds):
            self._checkin(key, entry)
            logger.warning(f"Timed out waiting for lock on {key}")
            raise ConcurrentModificationError(
                f"Another operation is in progress on {key}; retry shortly"
            )
        try:
            yield
        finally:
            entry.lock.release()
            self._checkin(key, entry)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._locks.get(key)
        return entry is not None and entry.lock.locked()

    def active_keys(self) -> int:
        """Number of keys currently held or waited on"""
        with self._guard:
            return len(self._locks)
