"""
Catalog/cache statistics for one request.

Every stage gets its own tracker; chunk trackers are folded into the
request tracker with merge(), which is associative so chunk completion order
does not matter.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Optional

OPERATION_TYPES = (
    "topTracks",
    "trackDetails",
    "relatedArtists",
    "artistProfiles",
    "artistSearches",
)
CACHE_LEVELS = ("memory", "database")
_FIELDS = ("Requested", "Cached", "FromSpotify", "ApiCalls")


class ApiStatisticsTracker:
    """Counts requests, cache hits by tier, catalog items and API calls."""

    def __init__(self, clock=time.perf_counter):
        """
        Args:
            clock: Timer for catalog calls (swapped out in tests)
        """
        self._clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._counts: Dict[str, int] = {
                f"{op}{suffix}": 0 for op in OPERATION_TYPES for suffix in _FIELDS
            }
            self._hits_by_level: Dict[str, int] = {level: 0 for level in CACHE_LEVELS}
            self._api_timings: List[float] = []

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[key] += amount

    def record_request(self, operation: str, count: int = 1) -> None:
        self._bump(f"{operation}Requested", count)

    def record_cache_hit(self, operation: str, level: str, count: int = 1) -> None:
        self._bump(f"{operation}Cached", count)
        with self._lock:
            self._hits_by_level[level] += count

    def record_from_spotify(self, operation: str, item_count: int) -> None:
        self._bump(f"{operation}FromSpotify", item_count)

    def record_api_call(self, operation: str, duration_ms: Optional[float] = None) -> None:
        self._bump(f"{operation}ApiCalls")
        if duration_ms is not None:
            with self._lock:
                self._api_timings.append(duration_ms)

    @contextmanager
    def timed_call(self, operation: str):
        """Count one catalog call and its duration, failed calls included."""
        started = self._clock()
        try:
            yield
        finally:
            self.record_api_call(operation, (self._clock() - started) * 1000.0)

    def merge(self, other: "ApiStatisticsTracker") -> "ApiStatisticsTracker":
        """Fold another tracker's counters into this one."""
        with other._lock:
            counts = dict(other._counts)
            levels = dict(other._hits_by_level)
            timings = list(other._api_timings)
        with self._lock:
            for key, value in counts.items():
                self._counts[key] += value
            for level, value in levels.items():
                self._hits_by_level[level] += value
            self._api_timings.extend(timings)
        return self

    def count(self, key: str) -> int:
        with self._lock:
            return self._counts[key]

    def get_statistics(self) -> Dict:
        with self._lock:
            stats: Dict = dict(self._counts)
            total_api_calls = sum(self._counts[f"{op}ApiCalls"] for op in OPERATION_TYPES)
            total_cache_hits = sum(self._counts[f"{op}Cached"] for op in OPERATION_TYPES)
            total_requested = sum(self._counts[f"{op}Requested"] for op in OPERATION_TYPES)
            stats["memoryCacheHits"] = self._hits_by_level["memory"]
            stats["databaseCacheHits"] = self._hits_by_level["database"]
            stats["avgApiCallMs"] = (
                sum(self._api_timings) / len(self._api_timings) if self._api_timings else 0.0
            )
        stats["totalApiCalls"] = total_api_calls
        stats["totalCacheHits"] = total_cache_hits
        stats["cacheHitRate"] = total_cache_hits / total_requested if total_requested else 0.0
        return stats
