"""
Per-key lock table.

Locks are created on first use and dropped once no thread holds or waits
for them, so the table only ever contains keys with live activity.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Hashable, Optional

from ..exceptions import LockTimeoutError


class _LockEntry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        # Reentrant so a holder can call helpers that take the same key
        self.lock = threading.RLock()
        self.refs = 0


class KeyedLockPool:
    """Reference-counted locks keyed by any hashable value."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _LockEntry] = {}

    def _checkout(self, key: Hashable) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.refs += 1
            return entry

    def _checkin(self, key: Hashable, entry: _LockEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]

    def acquire(self, key: Hashable, blocking: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Acquire the lock for ``key``.

        Returns False when ``blocking`` is False and the lock is held, or when
        ``timeout`` expires first.
        """
        entry = self._checkout(key)
        if not blocking:
            acquired = entry.lock.acquire(blocking=False)
        else:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            self._checkin(key, entry)
        return acquired

    def release(self, key: Hashable) -> None:
        with self._guard:
            entry = self._entries[key]
        entry.lock.release()
        self._checkin(key, entry)

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockTimeoutError: The lock was not acquired within ``timeout`` seconds
        """
        if not self.acquire(key, timeout=timeout):
            raise LockTimeoutError(str(key), timeout or 0)
        try:
            yield
        finally:
            self.release(key)

    def is_locked(self, key: Hashable) -> bool:
        """True while any thread holds or waits for ``key``."""
        with self._guard:
            return key in self._entries

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
