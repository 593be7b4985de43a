"""
Account Lock Registry

Per-key re-entrant locks. Operations touching several accounts take the
locks in sorted key order so two transfers in opposite directions cannot
deadlock. Unrelated accounts never contend.

A key's lock lives only while some thread holds or waits on it, so
operation-scoped keys such as ``txn:<id>`` or ``loan:<id>`` do not
accumulate.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class AccountLockRegistry:
    """Reference-counted RLock per key"""

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def active_keys(self) -> List[str]:
        with self._guard:
            return sorted(self._entries)

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry.lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    @contextmanager
    def acquire(self, *keys: str) -> Iterator[None]:
        """Hold the locks for all non-empty keys, acquired in sorted order"""
        ordered = sorted({k for k in keys if k})
        checked_out = []
        held = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            for key in checked_out:
                self._checkin(key)
