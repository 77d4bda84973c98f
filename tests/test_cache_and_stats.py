import threading

import pytest

from dual_gravity.cache import TTLCache
from dual_gravity.stats import ApiStatisticsTracker
from dual_gravity.utils import Deadline, chunked, is_valid_spotify_id, popularity_band, release_year
from dual_gravity.errors import PipelineCancelled


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# =============================================================================
# TTL CACHE
# =============================================================================

def test_cache_expires_entries():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=300, clock=clock)
    cache.set("a", 1)
    clock.now += 299
    assert cache.get("a") == 1
    clock.now += 2
    assert cache.get("a") is None
    assert len(cache) == 0


def test_cache_per_entry_ttl_and_get_many():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=300, clock=clock)
    cache.set("short", 1, ttl_seconds=10)
    cache.set("long", 2)
    clock.now += 11
    assert cache.get_many(["short", "long", "missing"]) == {"long": 2}


def test_cache_evicts_least_recently_used():
    cache = TTLCache(max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_cache_clear_and_delete():
    cache = TTLCache()
    cache.set("a", 1)
    cache.set("b", 2)
    cache.delete("a")
    assert cache.clear() == 1


def test_cache_distinguishes_falsy_values():
    cache = TTLCache()
    cache.set("empty", [])
    assert cache.get_many(["empty"]) == {"empty": []}


# =============================================================================
# STATISTICS
# =============================================================================

def test_statistics_totals():
    stats = ApiStatisticsTracker()
    stats.record_request("topTracks", 4)
    stats.record_cache_hit("topTracks", "memory", 2)
    stats.record_cache_hit("topTracks", "database", 1)
    stats.record_api_call("topTracks", duration_ms=120.0)
    stats.record_from_spotify("topTracks", 10)
    summary = stats.get_statistics()
    assert summary["topTracksRequested"] == 4
    assert summary["memoryCacheHits"] == 2
    assert summary["databaseCacheHits"] == 1
    assert summary["totalApiCalls"] == 1
    assert summary["cacheHitRate"] == pytest.approx(0.75)
    assert summary["avgApiCallMs"] == pytest.approx(120.0)


def test_statistics_merge_is_order_independent():
    def chunk(n):
        s = ApiStatisticsTracker()
        s.record_request("artistProfiles", n)
        s.record_api_call("artistProfiles")
        return s

    left = ApiStatisticsTracker().merge(chunk(1)).merge(chunk(2)).merge(chunk(3))
    right = ApiStatisticsTracker().merge(chunk(3)).merge(chunk(1).merge(chunk(2)))
    assert left.get_statistics() == right.get_statistics()
    assert left.count("artistProfilesApiCalls") == 3


def test_statistics_reset():
    stats = ApiStatisticsTracker()
    stats.record_request("trackDetails")
    stats.reset()
    assert stats.get_statistics()["trackDetailsRequested"] == 0


def test_statistics_reject_unknown_operation():
    with pytest.raises(KeyError):
        ApiStatisticsTracker().record_request("lyrics")


# =============================================================================
# DEADLINE AND HELPERS
# =============================================================================

def test_deadline_budget():
    clock = FakeClock()
    deadline = Deadline(9.0, clock=clock)
    clock.now += 3.0
    assert deadline.fraction_elapsed() == pytest.approx(1 / 3)
    assert not deadline.near(1.5)
    clock.now += 5.0
    assert deadline.near(1.5)
    assert not deadline.expired
    clock.now += 1.0
    assert deadline.expired
    assert deadline.remaining() == 0.0


def test_deadline_cancellation():
    event = threading.Event()
    deadline = Deadline(9.0, event)
    deadline.check_cancelled()
    event.set()
    with pytest.raises(PipelineCancelled):
        deadline.check_cancelled()


def test_unbounded_deadline():
    deadline = Deadline.unbounded()
    assert deadline.fraction_elapsed() == 0.0
    assert not deadline.expired


def test_spotify_id_validation():
    assert is_valid_spotify_id("4uLU6hMCjMI75M1A2tKUQC")
    assert not is_valid_spotify_id("4uLU6hMCjMI75M1A2tKUQ")
    assert not is_valid_spotify_id("123e4567-e89b-12d3-a456-426614174000")
    assert not is_valid_spotify_id("4uLU6hMCjMI75M1A2tKU-C")
    assert not is_valid_spotify_id(None)


def test_helpers():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert [popularity_band(p) for p in (10, 50, 90, None)] == ["low", "mid", "high", "mid"]
    assert release_year("1999-12-31") == 1999
    assert release_year("abcd") is None


def test_timed_call_records_duration_even_on_failure():
    ticks = iter([10.0, 10.25, 20.0, 20.75])
    stats = ApiStatisticsTracker(clock=lambda: next(ticks))
    with stats.timed_call("topTracks"):
        pass
    with pytest.raises(RuntimeError):
        with stats.timed_call("topTracks"):
            raise RuntimeError("catalog down")
    summary = stats.get_statistics()
    assert summary["topTracksApiCalls"] == 2
    assert summary["avgApiCallMs"] == pytest.approx(500.0)
