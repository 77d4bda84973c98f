"""
Process-local TTL cache (tier 1 of the artist lookup).

Shared by concurrent requests. Values are idempotent re-derivations of
catalog data, so last-write-wins is fine and only the map itself is locked.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Hashable, Iterable, Optional, Tuple

from .config import CacheConfig, DEFAULT_CACHE_CONFIG

_MISSING = object()


class TTLCache:
    """Bounded in-memory cache with per-entry expiry."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_CONFIG.ttl_seconds,
        max_entries: int = DEFAULT_CACHE_CONFIG.max_entries,
        clock=time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: CacheConfig) -> "TTLCache":
        return cls(ttl_seconds=config.ttl_seconds, max_entries=config.max_entries)

    def get(self, key: Hashable, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return default
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            return value

    def get_many(self, keys: Iterable[Hashable]) -> Dict[Hashable, Any]:
        """Return the live entries among keys."""
        found = {}
        for key in keys:
            value = self.get(key, _MISSING)
            if value is not _MISSING:
                found[key] = value
        return found

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> int:
        """Drop every entry. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
