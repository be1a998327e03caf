import threading
from contextlib import contextmanager
from typing import Any, Dict, Hashable


class KeyedLock:
    """A re-entrant mutex per key, created on demand and dropped when unused.

    Serializes the check-and-act sequences of a single process (quota
    consumption per user+type, answer/finish per session). Cross-process
    safety comes from the conditional UPDATEs and unique constraints in
    the store.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, Any] = {}
        self._waiters: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    self._waiters.pop(key, None)
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


quota_locks = KeyedLock()
session_locks = KeyedLock()
