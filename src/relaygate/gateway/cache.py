"""Bounded in-memory cache with per-entry expiry.

Expiry is lazy: an entry read after its deadline is treated as absent and
removed on that read. There is no background sweep. When the cache is full,
the least recently written entry is evicted.

State is local to the process; replicas behind a load balancer each keep
their own cache.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: str
    expires_at: float


class TTLCache:
    """Key -> serialized value store with absolute per-entry expiry.

    Example:
        >>> cache = TTLCache(default_ttl=300.0)
        >>> cache.set("models", '{"object": "list"}')
        >>> cache.get("models")
        '{"object": "list"}'
    """

    def __init__(
        self,
        default_ttl: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        expires_at = self._clock() + (self.default_ttl if ttl is None else ttl)
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full, evicted %s", evicted[:64])

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
