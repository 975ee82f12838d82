"""Sliding-window connection rate limiter."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

__all__ = ["SlidingWindowRateLimiter"]


class SlidingWindowRateLimiter:
    """At most *capacity* admissions per key in any rolling window.

    Entries exactly ``window_s`` old are already outside the window.
    """

    def __init__(
        self,
        capacity: int,
        window_s: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.capacity = capacity
        self.window_s = window_s
        self._clock = clock or time.monotonic
        self._buckets: Dict[str, Deque[float]] = defaultdict(deque)

    def allow(self, key: str) -> bool:
        """Record an attempt for *key*; False when the window is full."""
        now = self._clock()
        bucket = self._buckets[key]
        cutoff = now - self.window_s
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if len(bucket) >= self.capacity:
            return False
        bucket.append(now)
        return True

    def prune(self) -> None:
        """Drop keys whose window has fully expired."""
        cutoff = self._clock() - self.window_s
        for key in list(self._buckets):
            bucket = self._buckets[key]
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if not bucket:
                del self._buckets[key]

    def __len__(self) -> int:
        return len(self._buckets)
