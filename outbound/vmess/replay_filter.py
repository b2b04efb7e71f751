"""A two-generation filter that refuses authentication ids seen within the last interval."""

from __future__ import annotations

import threading
import time
from typing import Callable

REPLAY_FILTER_CAPACITY = 100000


class ReplayFilter:
    """Remembers digests for between one and two intervals (seconds)."""

    def __init__(self, interval: int, clock: Callable[[], float] = time.time) -> None:
        self.interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._pool_a: set[bytes] = set()
        self._pool_b: set[bytes] = set()
        self._pool_swap = False
        self._last_swap = 0

    @staticmethod
    def _insert_unique(pool: set[bytes], digest: bytes) -> bool:
        if digest in pool or len(pool) >= REPLAY_FILTER_CAPACITY:
            return False
        pool.add(digest)
        return True

    def check(self, digest: bytes) -> bool:
        """Record digest; False if it was already seen."""
        digest = bytes(digest)
        with self._lock:
            now = int(self._clock())
            if self._last_swap == 0:
                self._last_swap = now
                self._pool_a = set()
                self._pool_b = set()
            if now - self._last_swap >= self.interval:
                if self._pool_swap:
                    self._pool_a.clear()
                else:
                    self._pool_b.clear()
                self._pool_swap = not self._pool_swap
                self._last_swap = now
            return self._insert_unique(self._pool_a, digest) and self._insert_unique(self._pool_b, digest)