"""
Per-key mutual exclusion.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class KeyedLock:
    """
    One lock per key, created on demand.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the table only ever contains keys that are in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
