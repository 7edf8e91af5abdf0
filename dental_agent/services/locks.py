"""Per-key mutual exclusion for work scoped to one contact."""

from __future__ import annotations

import threading
import weakref
from collections.abc import Hashable


class KeyedLocks:
    """Hands out one ``threading.Lock`` per key.

    Locks live in a ``WeakValueDictionary``: an entry disappears once no
    caller holds a reference to its lock, so keys seen once do not pile up
    in a long-running server.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[Hashable, threading.Lock] = weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
