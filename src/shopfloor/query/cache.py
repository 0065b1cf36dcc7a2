"""Process-wide entity cache with optional size bound.

One EntityCache is built per entity kind by the Shopfloor facade and passed
to the list queries that share it. Freshness is the caller's decision:
entries past their TTL are kept (they still serve as stale fallback) until
evicted or cleared.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: Any
    timestamp: float

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_fresh(self, ttl: float, now: float) -> bool:
        return self.age(now) < ttl


class EntityCache:
    """Key -> CacheEntry map with insertion-order eviction.

    With *maxsize* set, storing a new key beyond capacity evicts the entry
    that was stored least recently. Reads never affect eviction order.
    Storing an existing key replaces its entry and counts as a fresh
    insertion. Not thread-safe; meant for a single event loop.
    """

    def __init__(
        self,
        maxsize: int | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        if maxsize is not None and maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._maxsize = maxsize
        self._clock = clock
        self._name = name
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    @property
    def maxsize(self) -> int | None:
        return self._maxsize

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> CacheEntry | None:
        """Entry for *key* regardless of age, or None."""
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("%s miss: %s", self._name, key)
        return entry

    def get_fresh(self, key: str, ttl: float) -> CacheEntry | None:
        """Entry for *key* only if younger than *ttl* seconds."""
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("%s miss: %s", self._name, key)
            return None
        if not entry.is_fresh(ttl, self._clock()):
            logger.debug("%s stale: %s", self._name, key)
            return None
        logger.debug("%s hit: %s", self._name, key)
        return entry

    def set(self, key: str, data: Any) -> CacheEntry:
        entry = CacheEntry(key=key, data=data, timestamp=self._clock())
        if key in self._entries:
            del self._entries[key]
        elif self._maxsize is not None:
            while len(self._entries) >= self._maxsize:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("%s evict: %s", self._name, evicted)
        self._entries[key] = entry
        logger.debug("%s put: %s (size=%d)", self._name, key, len(self._entries))
        return entry

    def clear(self, key: str | None = None) -> None:
        """Drop one key, or every entry when *key* is None."""
        if key is not None:
            if self._entries.pop(key, None) is not None:
                logger.debug("%s invalidated: %s", self._name, key)
            return
        size = len(self._entries)
        self._entries.clear()
        if size:
            logger.debug("%s cleared (%d entries)", self._name, size)

    def keys(self) -> list[str]:
        """Keys in eviction order (next to be evicted first)."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))
