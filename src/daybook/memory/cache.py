"""Process-local TTL cache.

Entries expire lazily on read; :meth:`TTLCache.evict_expired` sweeps the
rest.  A miss is always safe: the store stays the source of truth.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")

__all__ = ["TTLCache"]


class TTLCache(Generic[V]):
    """Dict-like cache whose entries live for ``ttl_s`` seconds.

    Parameters
    ----------
    ttl_s:
        Entry lifetime in seconds.
    clock:
        Returns the current time in seconds.  Defaults to ``time.monotonic``.
    """

    def __init__(self, ttl_s: float, clock: Optional[Callable[[], float]] = None) -> None:
        self.ttl_s = ttl_s
        self._clock = clock or time.monotonic
        self._data: Dict[Hashable, Tuple[float, V]] = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return default
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._data[key] = (self._clock() + self.ttl_s, value)

    def pop(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def discard_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key satisfies *predicate*."""
        doomed = [k for k in self._data if predicate(k)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    def evict_expired(self) -> int:
        now = self._clock()
        return self.discard_where(lambda k: self._data[k][0] <= now)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def __len__(self) -> int:
        return len(self._data)
