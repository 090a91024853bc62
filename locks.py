"""Per-key mutexes.

Group mutations, thread appends and per-identity cooldown checks each take a
lock for their own key only, so unrelated groups/threads never wait on each
other. Entries are reference counted and dropped when nobody holds or waits
on them.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, refcount]

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Hold every lock in ``keys``, acquired in sorted order."""
        ordered = sorted(set(keys))
        acquired: list[tuple[str, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                lock.acquire()
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
