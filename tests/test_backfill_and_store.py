import threading

from dual_gravity.backfill import Backfiller, WorkQueue
from dual_gravity.models import ArtistProfile
from dual_gravity.store import CatalogStore

from fakes import make_artist, make_track, sid


# =============================================================================
# WORK QUEUE
# =============================================================================

def test_queue_runs_jobs_and_dedupes_pending():
    q = WorkQueue(maxsize=8)
    gate = threading.Event()
    ran = []
    try:
        q.enqueue("block", gate.wait)
        assert q.enqueue("job", ran.append, 1)
        assert not q.enqueue("job", ran.append, 2)
        gate.set()
        assert q.drain(timeout=5)
        assert ran == [1]
        assert q.completed == 2
    finally:
        q.close()


def test_full_queue_drops_without_blocking():
    q = WorkQueue(maxsize=1)
    gate = threading.Event()
    try:
        q.enqueue("block", gate.wait)
        accepted = [q.enqueue(f"job{n}", lambda: None) for n in range(5)]
        assert accepted.count(False) >= 1
        assert q.dropped >= 1
        gate.set()
        assert q.drain(timeout=5)
    finally:
        q.close()


def test_failed_job_is_counted_and_worker_survives():
    q = WorkQueue()
    ran = []
    try:
        q.enqueue("bad", lambda: 1 / 0)
        q.enqueue("good", ran.append, "ok")
        assert q.drain(timeout=5)
        assert q.failed == 1
        assert ran == ["ok"]
    finally:
        q.close()


def test_closed_queue_refuses_jobs():
    q = WorkQueue()
    q.close()
    assert not q.enqueue("late", lambda: None)


# =============================================================================
# BACKFILLER AND STORE
# =============================================================================

def test_write_backs_land_in_store(store, work_queue):
    backfiller = Backfiller(work_queue, store)
    artist = make_artist(3, genres=["rock"])
    tracks = [make_track(n, artist) for n in range(30, 33)]
    backfiller.write_profiles([ArtistProfile.from_spotify(artist)])
    backfiller.write_top_tracks(artist["id"], tracks)
    assert work_queue.drain(timeout=5)
    assert store.get_artist_profiles([artist["id"]])[artist["id"]].genres == ("rock",)
    assert [t["id"] for t in store.get_top_tracks([artist["id"]])[artist["id"]]] == [t["id"] for t in tracks]


def test_backfill_needs_a_catalog(store, work_queue):
    backfiller = Backfiller(work_queue, store)
    assert not backfiller.request_genre_backfill(ArtistProfile(id=sid("art", 1), name="A"))


def test_upsert_keeps_known_genres(store):
    store.upsert_artist_profile(ArtistProfile.from_spotify(make_artist(3, genres=["rock"], popularity=60)))
    store.upsert_artist_profile(ArtistProfile(id=sid("art", 3), name="Artist 3"))
    profile = store.get_artist_profiles([sid("art", 3)])[sid("art", 3)]
    assert profile.genres == ("rock",)
    assert profile.popularity == 60


def test_find_artist_by_name_is_case_insensitive(store):
    store.upsert_artist_profile(ArtistProfile.from_spotify(make_artist(3, name="The Band")))
    assert store.find_artist_by_name("  the BAND ").id == sid("art", 3)
    assert store.find_artist_by_name("other") is None


def test_sample_tracks_exclusions(store):
    a, b, c = make_artist(1), make_artist(2, name="Skip Me"), make_artist(3)
    store.upsert_tracks([make_track(10, a), make_track(11, a), make_track(20, b), make_track(30, c)])
    store.upsert_tracks([make_track(31, c, playable=False)])
    sampled = store.sample_tracks(
        limit=10,
        exclude_track_ids={sid("trk", 10)},
        exclude_artist_names={"skip me"},
    )
    assert {t["id"] for t in sampled} == {sid("trk", 11), sid("trk", 30)}


def test_sample_tracks_per_artist_cap(store):
    a = make_artist(1)
    store.upsert_tracks([make_track(n, a) for n in range(10)])
    assert len(store.sample_tracks(limit=10, tracks_per_artist=1)) == 1
    assert store.sample_tracks(limit=0) == []


def test_genre_statistics(store):
    store.upsert_artist_profiles([
        ArtistProfile.from_spotify(make_artist(1, genres=["rock", "pop"])),
        ArtistProfile.from_spotify(make_artist(2, genres=["rock"])),
        ArtistProfile.from_spotify(make_artist(3, genres=[])),
    ])
    store.upsert_tracks([make_track(1, make_artist(1))])
    stats = store.genre_statistics()
    assert stats["totalTracks"] == 1
    assert stats["totalArtists"] == 3
    assert stats["artistsWithoutGenres"] == 1
    assert stats["topGenres"][0] == ("rock", 2)


def test_related_artists_round_trip(store, work_queue):
    assert store.get_related_artists(sid("art", 1)) is None
    Backfiller(work_queue, store).write_related_artists(
        sid("art", 1), [{"id": sid("art", 2), "name": "Two"}, {"id": sid("art", 3), "name": "Three"}]
    )
    assert work_queue.drain(timeout=5)
    assert [r["id"] for r in store.get_related_artists(sid("art", 1))] == [sid("art", 2), sid("art", 3)]
    store.upsert_related_artists(sid("art", 4), [])
    assert store.get_related_artists(sid("art", 4)) == []


def test_rows_past_ttl_read_as_missing():
    now = [1_000_000.0]
    store = CatalogStore(ttl_days=100, clock=lambda: now[0])
    artist = make_artist(3, name="Aging Band")
    store.upsert_artist_profile(ArtistProfile.from_spotify(artist))
    store.upsert_top_tracks(artist["id"], [make_track(30, artist)])
    store.upsert_related_artists(artist["id"], [{"id": sid("art", 4), "name": "Four"}])

    now[0] += 99 * 86400
    assert artist["id"] in store.get_artist_profiles([artist["id"]])
    assert store.get_related_artists(artist["id"]) is not None

    now[0] += 2 * 86400
    assert store.get_artist_profiles([artist["id"]]) == {}
    assert store.find_artist_by_name("aging band") is None
    assert store.get_top_tracks([artist["id"]]) == {}
    assert store.get_related_artists(artist["id"]) is None
    # Track details stay available to the store samplers
    assert len(store.sample_tracks(limit=5)) == 1
    store.close()


def test_store_without_ttl_keeps_rows():
    now = [0.0]
    store = CatalogStore(ttl_days=None, clock=lambda: now[0])
    store.upsert_artist_profile(ArtistProfile.from_spotify(make_artist(3)))
    now[0] += 10_000 * 86400
    assert sid("art", 3) in store.get_artist_profiles([sid("art", 3)])
    store.close()
