from threading import Lock
from contextlib import contextmanager


class KeyedLock:
    """
    A lock per key, created on first use and dropped when no caller holds
    or waits on it.

    Serialises read-then-write sequences that touch the same user or the
    same book inside one process. Several keys are always acquired in
    sorted order so two callers can never wait on each other.
    """

    def __init__(self):
        self._guard = Lock()
        self._locks = {}

    def __len__(self):
        with self._guard:
            return len(self._locks)

    def _checkout(self, key) -> Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key):
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if not entry[1]:
                del self._locks[key]

    @contextmanager
    def hold(self, *keys):
        checked_out = []
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in reversed(checked_out):
                self._checkin(key)


issuance_locks = KeyedLock()
