"""
Per-key locks for single-writer ordering.

Heartbeats and session finalization for the same attendance record are
serialized on that record's lock; different records proceed in parallel.
"""

import threading
from collections import defaultdict
from contextlib import contextmanager


class KeyedLocks:
    """Lazily created lock per key (e.g. attendance ID)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)

    def get(self, key):
        with self._guard:
            return self._locks[key]

    @contextmanager
    def hold(self, key):
        lock = self.get(key)
        with lock:
            yield

    def discard(self, key):
        """Forget a key's lock once the record can no longer change."""
        with self._guard:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)
