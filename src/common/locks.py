"""
Per-key lock registry.
"""

import threading
from typing import Dict


class KeyedLock:
    """Hands out one re-entrant lock per key (interface name)."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self.lock = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        """
        Get the lock for a key, creating it on first use.

        Args:
            key: Lock key

        Returns:
            Re-entrant lock shared by every caller using the same key
        """
        with self.lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock
