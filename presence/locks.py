import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLocks:
    """One lock per key, created on demand and dropped when the key is pruned.

    A waiter that wakes up holding a lock that was discarded in the meantime
    retries with the key's current lock, so two threads never serialize on
    different locks for the same key.
    """

    def __init__(self):
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        while True:
            with self._guard:
                lock = self._locks.setdefault(key, threading.Lock())
            lock.acquire()
            with self._guard:
                if self._locks.get(key) is lock:
                    break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def discard(self, key: Hashable) -> None:
        """Forget the lock for ``key``. Only call while holding it."""
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
