"""Per-user lock registry: state is partitioned by user id, so users never contend."""
from contextlib import contextmanager
from typing import Dict, Generator
import threading

from geonotify.errors import ProcessingError


class UserLockRegistry:
    """Hands out one lock per user id, created lazily."""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def hold(self, user_id: str) -> Generator[None, None, None]:
        """
        Hold the user's lock for the duration of the block.

        Raises:
            ProcessingError: If the lock is not acquired within the timeout
        """
        lock = self.lock_for(user_id)
        if not lock.acquire(timeout=self.timeout_seconds):
            raise ProcessingError(
                "Timed out waiting for user partition",
                {"user_id": user_id, "timeout_seconds": self.timeout_seconds}
            )
        try:
            yield
        finally:
            lock.release()

    def user_ids(self):
        with self._registry_lock:
            return list(self._locks.keys())
