import random

import pytest

from dual_gravity.candidates import (
    AbsoluteFallbackStrategy,
    CandidatePool,
    CandidateSeedBuilder,
    Exclusions,
    GenreSearchStrategy,
    PoolConstraints,
    StoreSampleStrategy,
)
from dual_gravity.config import CandidateConfig
from dual_gravity.errors import EmptyStoreError, PipelineCancelled
from dual_gravity.models import ArtistProfile, CandidateSeed, CandidateSource, TargetArtist, TargetProfile
from dual_gravity.stats import ApiStatisticsTracker
from dual_gravity.utils import Deadline

from fakes import CURRENT_ARTIST, FakeCatalog, build_world, current_track_of, make_artist, make_track, sid


def related_ids(catalog):
    return catalog.related[sid("art", CURRENT_ARTIST)]


def exclusions_for(catalog, played=()):
    current = current_track_of(catalog)
    return Exclusions(
        played_track_ids=set(played),
        current_track_id=current["id"],
        current_artist_id=current["artists"][0]["id"],
        current_artist_name=current["artists"][0]["name"],
    )


def constraints(min_pool=50, min_unique=20, genres=(), deadline=None):
    return PoolConstraints(
        min_pool=min_pool,
        min_unique_artists=min_unique,
        seed_genres=list(genres),
        deadline=deadline or Deadline.unbounded(),
        stats=ApiStatisticsTracker(),
        rng=random.Random(1),
    )


# =============================================================================
# EXCLUSIONS AND POOL
# =============================================================================

def test_exclusion_reasons():
    artist = make_artist(3)
    current = make_artist(1, name="Current Band")
    exclusions = Exclusions({sid("trk", 7)}, sid("trk", 8), current["id"], "Current Band")
    assert exclusions.rejection_reason(make_track(9, artist)) is None
    assert exclusions.rejection_reason(make_track(7, artist)) == "played"
    assert exclusions.rejection_reason(make_track(8, artist)) == "current_track"
    assert exclusions.rejection_reason(make_track(9, artist, playable=False)) == "unplayable"
    assert exclusions.rejection_reason(make_track(9, artist, name=" ")) == "missing_metadata"
    assert exclusions.rejection_reason(make_track(9, current)) == "current_artist"


def test_featured_current_artist_is_excluded():
    current = make_artist(1, name="Current Band")
    track = make_track(9, make_artist(3))
    track["artists"].append({"id": "someotherid", "name": "current band"})
    exclusions = Exclusions(current_artist_id=current["id"], current_artist_name="Current Band")
    assert exclusions.rejection_reason(track) == "current_artist"


def test_pool_collision_keeps_higher_priority_source():
    pool = CandidatePool(Exclusions())
    track = make_track(9, make_artist(3))
    assert pool.register(CandidateSeed(track, CandidateSource.RELATED_TOP_TRACKS))
    assert pool.register(CandidateSeed(track, CandidateSource.EMBEDDING_FALLBACK))
    assert not pool.register(CandidateSeed(track, CandidateSource.RECOMMENDATIONS))
    assert len(pool) == 1
    assert pool.seeds[0].source == CandidateSource.EMBEDDING_FALLBACK
    assert pool.rejected["duplicate"] == 1


def test_pool_debug():
    pool = CandidatePool(Exclusions(played_track_ids={sid("trk", 2)}))
    pool.register(CandidateSeed(make_track(1, make_artist(1)), CandidateSource.RELATED_TOP_TRACKS))
    pool.register(CandidateSeed(make_track(2, make_artist(2)), CandidateSource.RELATED_TOP_TRACKS))
    debug = pool.debug()
    assert debug["poolSize"] == 1
    assert debug["uniqueArtists"] == 1
    assert debug["rejected"] == {"played": 1}
    assert debug["sources"] == {"related_top_tracks": 1}


# =============================================================================
# STRATEGIES
# =============================================================================

def test_store_sample_adds_unseen_artists_only(seeded_store):
    pool = CandidatePool(Exclusions())
    pool.register(CandidateSeed(make_track(500, make_artist(500)), CandidateSource.RELATED_TOP_TRACKS))
    pool, satisfied = StoreSampleStrategy(seeded_store)(pool, constraints())
    assert satisfied
    assert len(pool) == 50
    assert pool.unique_artist_count == 50
    assert {s.source for s in pool.seeds[1:]} == {CandidateSource.EMBEDDING_FALLBACK}


def test_absolute_fallback_fills_pool(seeded_store):
    pool, satisfied = AbsoluteFallbackStrategy(seeded_store)(CandidatePool(Exclusions()), constraints())
    assert satisfied
    assert len(pool) == 50


def test_absolute_fallback_on_empty_store_raises(store):
    with pytest.raises(EmptyStoreError):
        AbsoluteFallbackStrategy(store)(CandidatePool(Exclusions()), constraints())


def test_absolute_fallback_reports_exhaustion(store):
    artist = make_artist(500)
    store.upsert_tracks([make_track(n, artist) for n in range(10)])
    pool, satisfied = AbsoluteFallbackStrategy(store)(CandidatePool(Exclusions()), constraints())
    assert not satisfied
    assert len(pool) == 10


def test_genre_search_one_track_per_new_artist(work_queue, store):
    from dual_gravity.backfill import Backfiller

    a, b = make_artist(40, genres=["jazz"]), make_artist(41, genres=["jazz"])
    tracks = [make_track(400, a), make_track(401, a), make_track(402, b)]
    catalog = FakeCatalog(genre_tracks={"jazz": tracks})
    strategy = GenreSearchStrategy(catalog, Backfiller(work_queue, store, catalog))
    pool, satisfied = strategy(CandidatePool(Exclusions()), constraints(genres=["unknown", "jazz"]))
    assert not satisfied
    assert pool.track_ids == {sid("trk", 400), sid("trk", 402)}
    assert catalog.calls["search_tracks_by_genre"] == 1
    assert work_queue.drain(timeout=5)
    assert store.count_tracks() == 3


def test_genre_search_survives_catalog_failure(work_queue, store):
    from dual_gravity.backfill import Backfiller

    catalog = FakeCatalog()
    catalog.failing.add("search_tracks_by_genre")
    strategy = GenreSearchStrategy(catalog, Backfiller(work_queue, store, catalog))
    pool, satisfied = strategy(CandidatePool(Exclusions()), constraints(genres=["rock", "pop"]))
    assert len(pool) == 0
    assert catalog.calls["search_tracks_by_genre"] == 2


# =============================================================================
# BUILDER
# =============================================================================

def test_pool_from_related_artists(resolver_for, store):
    catalog = build_world(related_count=12)
    builder = CandidateSeedBuilder(resolver_for(catalog), store, rng=random.Random(4), strategies=[])
    stats = ApiStatisticsTracker()
    pool = builder.build_pool(related_ids(catalog), exclusions_for(catalog), [], stats, Deadline.unbounded())
    assert len(pool) == 12
    assert pool.unique_artist_count == 12
    assert pool.tiers_used == ["related_top_tracks"]
    assert stats.count("topTracksApiCalls") == 12


def test_empty_related_list_falls_through_to_store(resolver_for, seeded_store):
    catalog = FakeCatalog()
    builder = CandidateSeedBuilder(resolver_for(catalog), seeded_store, rng=random.Random(4))
    pool = builder.build_pool([], Exclusions(), ["rock"], ApiStatisticsTracker(), Deadline.unbounded())
    assert len(pool) >= 50
    assert pool.unique_artist_count >= 9
    assert "store_sample" in pool.tiers_used


def test_absolute_fallback_alone_meets_minimums(resolver_for, seeded_store):
    builder = CandidateSeedBuilder(
        resolver_for(FakeCatalog()),
        seeded_store,
        strategies=[AbsoluteFallbackStrategy(seeded_store)],
        rng=random.Random(4),
    )
    pool = builder.build_pool([], Exclusions(), [], ApiStatisticsTracker(), Deadline.unbounded())
    assert len(pool) >= 50
    assert pool.unique_artist_count >= 9
    assert pool.tiers_used == ["absolute_fallback"]


def test_played_only_track_removes_artist(resolver_for, store):
    catalog = build_world(related_count=6, tracks_per_artist=1)
    artist_x = related_ids(catalog)[0]
    only_track = catalog.top_tracks[artist_x][0]["id"]
    builder = CandidateSeedBuilder(resolver_for(catalog), store, strategies=[])
    pool = builder.build_pool(
        related_ids(catalog), exclusions_for(catalog, played=[only_track]), [], ApiStatisticsTracker(), Deadline.unbounded()
    )
    assert not pool.has_artist(artist_x)
    assert only_track not in pool.track_ids
    assert len(pool) == 5


def test_pick_track_draws_from_top_ten(resolver_for, store):
    catalog = build_world(related_count=1, tracks_per_artist=15)
    builder = CandidateSeedBuilder(resolver_for(catalog), store, rng=random.Random(0))
    tracks = catalog.top_tracks[related_ids(catalog)[0]]
    top_ten = {t["id"] for t in tracks[:10]}
    picks = {builder.pick_track(tracks, Exclusions())["id"] for _ in range(200)}
    assert picks <= top_ten
    assert len(picks) > 1


def test_fetch_chunk_without_api_uses_store_only(resolver_for, store):
    catalog = build_world(related_count=5)
    builder = CandidateSeedBuilder(resolver_for(catalog), store)
    seeds = builder.fetch_chunk(
        related_ids(catalog), exclusions_for(catalog), ApiStatisticsTracker(), Deadline.unbounded(), allow_api=False
    )
    assert seeds == []
    assert catalog.calls["get_artist_top_tracks"] == 0


def test_missing_fetches_capped_per_chunk(resolver_for, store):
    catalog = build_world(related_count=8)
    config = CandidateConfig(max_missing_per_chunk=3, chunk_size=8)
    builder = CandidateSeedBuilder(resolver_for(catalog), store, config)
    seeds = builder.fetch_chunk(related_ids(catalog), exclusions_for(catalog), ApiStatisticsTracker(), Deadline.unbounded())
    assert len(seeds) == 3
    assert catalog.calls["get_artist_top_tracks"] == 3


def test_build_pool_reports_chunk_progress(resolver_for, store):
    catalog = build_world(related_count=12)
    builder = CandidateSeedBuilder(resolver_for(catalog), store, strategies=[])
    seen = []
    builder.build_pool(
        related_ids(catalog),
        exclusions_for(catalog),
        [],
        ApiStatisticsTracker(),
        Deadline.unbounded(),
        on_chunk=lambda done, total: seen.append((done, total)),
    )
    assert seen == [(1, 3), (2, 3), (3, 3)]


def test_build_pool_honours_cancellation(resolver_for, store):
    import threading

    cancel = threading.Event()
    cancel.set()
    builder = CandidateSeedBuilder(resolver_for(build_world()), store)
    with pytest.raises(PipelineCancelled):
        builder.build_pool([sid("art", 2)], Exclusions(), [], ApiStatisticsTracker(), Deadline(9.0, cancel))


def test_target_insertion_late_game(resolver_for, store):
    catalog = build_world(related_count=3)
    builder = CandidateSeedBuilder(resolver_for(catalog), store, strategies=[])
    pool = builder.build_pool(
        related_ids(catalog), exclusions_for(catalog), [], ApiStatisticsTracker(), Deadline.unbounded()
    )
    target_profile = ArtistProfile.from_spotify(catalog.artists[sid("art", 900)])
    targets = {
        "player1": TargetProfile.from_profile(TargetArtist("Target One"), target_profile),
        "player2": None,
    }

    early = builder.insert_targets(pool, targets, {"player1": 0.5}, 3, ApiStatisticsTracker(), Deadline.unbounded())
    assert early == []

    late = builder.insert_targets(pool, targets, {"player1": 0.5}, 8, ApiStatisticsTracker(), Deadline.unbounded())
    assert [s.source for s in late] == [CandidateSource.TARGET_BOOST]
    assert pool.has_artist(sid("art", 900))

    again = builder.insert_targets(pool, targets, {"player1": 0.85}, 9, ApiStatisticsTracker(), Deadline.unbounded())
    assert again == []


# =============================================================================
# DEADLINE FALLBACKS
# =============================================================================

def deadline_at(elapsed, budget=9.0):
    """A deadline whose clock already reads elapsed seconds past its start."""
    now = [0.0]
    deadline = Deadline(budget, clock=lambda: now[0])
    now[0] = elapsed
    return deadline


def test_genre_search_skipped_when_deadline_near(resolver_for, seeded_store):
    catalog = FakeCatalog(genre_tracks={"rock": [make_track(800, make_artist(800))]})
    builder = CandidateSeedBuilder(resolver_for(catalog), seeded_store, rng=random.Random(4))

    builder.complete_pool(CandidatePool(Exclusions()), ["rock"], ApiStatisticsTracker(), deadline_at(0.0))
    assert catalog.calls["search_tracks_by_genre"] == 1

    pool = builder.complete_pool(CandidatePool(Exclusions()), ["rock"], ApiStatisticsTracker(), deadline_at(8.0))
    assert catalog.calls["search_tracks_by_genre"] == 1
    assert pool.tiers_used == ["store_sample"]
    assert len(pool) >= 50


def test_expired_deadline_goes_straight_to_store(resolver_for, seeded_store):
    catalog = build_world(related_count=12)
    builder = CandidateSeedBuilder(resolver_for(catalog), seeded_store, rng=random.Random(4))
    pool = builder.build_pool(
        related_ids(catalog), exclusions_for(catalog), ["alternative rock"], ApiStatisticsTracker(), deadline_at(10.0)
    )
    assert catalog.calls["get_artist_top_tracks"] == 0
    assert catalog.calls["search_tracks_by_genre"] == 0
    assert pool.tiers_used == ["store_sample"]
    assert len(pool) >= 50
    assert pool.unique_artist_count >= 20


def test_late_chunks_keep_to_cache_and_store(resolver_for, store):
    catalog = build_world(related_count=12)
    builder = CandidateSeedBuilder(resolver_for(catalog), store, strategies=[])
    pool = builder.build_pool(
        related_ids(catalog), exclusions_for(catalog), [], ApiStatisticsTracker(), deadline_at(4.0)
    )
    assert catalog.calls["get_artist_top_tracks"] == 0
    assert len(pool) == 0


def test_api_allowed_only_in_the_related_budget(resolver_for, store):
    catalog = build_world(related_count=12)
    config = CandidateConfig(max_workers=1)
    builder = CandidateSeedBuilder(resolver_for(catalog), store, config, strategies=[])
    now = [0.0]
    deadline = Deadline(9.0, clock=lambda: now[0])
    flags = []

    def fetch(chunk, exclusions, stats, deadline, allow_api):
        flags.append(allow_api)
        now[0] += 2.0
        return []

    builder.build_pool(
        related_ids(catalog), exclusions_for(catalog), [], ApiStatisticsTracker(), deadline, fetch=fetch
    )
    assert flags == [True, True, False]
