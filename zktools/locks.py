"""
Keyed operation locks for multi-step device sequences.

Keys are free-form ("write:348:10.10.20.59"); GLOBAL serializes every
fingerprint operation regardless of user or device.
"""

import threading
from contextlib import contextmanager

GLOBAL = "global"


class OperationLock:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}     # key -> threading.Lock
        self._held = set()

    def _lock_for(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def acquire(self, key=GLOBAL, timeout=None):
        """Block until key is free. Returns a release callable."""
        lock = self._lock_for(key)
        if not lock.acquire(timeout=-1 if timeout is None else timeout):
            raise TimeoutError(f"Lock '{key}' busy")
        with self._guard:
            self._held.add(key)

        def release():
            with self._guard:
                self._held.discard(key)
            lock.release()
        return release

    def acquire_global(self, timeout=None):
        return self.acquire(GLOBAL, timeout)

    @contextmanager
    def hold(self, key=GLOBAL, timeout=None):
        release = self.acquire(key, timeout)
        try:
            yield
        finally:
            release()

    def is_locked(self, key=GLOBAL):
        with self._guard:
            return key in self._held
