"""
Background write-back and backfill.

The request path only ever enqueues: store write-backs of catalog results and
genre/metadata backfills run on one daemon worker behind a bounded queue.
A full queue drops the job with a warning rather than blocking the caller;
the next request that misses the store simply enqueues it again.
"""

import logging
import queue
import threading
from typing import Any, Callable, Hashable, Optional, Sequence, Set, Tuple

from .models import ArtistProfile
from .config import DEFAULT_CACHE_CONFIG

logger = logging.getLogger(__name__)

_STOP = object()


class WorkQueue:
    """Bounded job queue drained by a single daemon thread."""

    def __init__(self, maxsize: int = DEFAULT_CACHE_CONFIG.backfill_queue_size, name: str = "dgs-backfill"):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._pending: Set[Hashable] = set()
        self._pending_lock = threading.Lock()
        self._closed = False
        self.completed = 0
        self.failed = 0
        self.dropped = 0
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def enqueue(self, key: Hashable, func: Callable, *args) -> bool:
        """
        Schedule func(*args) unless a job with the same key is pending.

        Returns:
            True if the job was queued
        """
        if self._closed:
            return False
        with self._pending_lock:
            if key in self._pending:
                return False
            self._pending.add(key)
        try:
            self._queue.put_nowait((key, func, args))
        except queue.Full:
            with self._pending_lock:
                self._pending.discard(key)
            self.dropped += 1
            logger.warning(f"Background queue full, dropped job {key}")
            return False
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                key, func, args = item
                try:
                    func(*args)
                    self.completed += 1
                except Exception as e:
                    self.failed += 1
                    logger.warning(f"Background job {key} failed: {e}")
                finally:
                    with self._pending_lock:
                        self._pending.discard(key)
            finally:
                self._queue.task_done()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued job has run. Returns False on timeout."""
        with self._queue.all_tasks_done:
            return self._queue.all_tasks_done.wait_for(
                lambda: self._queue.unfinished_tasks == 0, timeout
            )

    def close(self, timeout: float = 5.0) -> None:
        """Finish queued jobs and stop the worker."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout)

    def __len__(self) -> int:
        return self._queue.qsize()


class Backfiller:
    """Store write-backs and metadata backfills, all fire-and-forget."""

    def __init__(self, work_queue: WorkQueue, store, catalog=None):
        """
        Args:
            work_queue: Queue the jobs run on
            store: CatalogStore receiving the writes
            catalog: Catalog client used for genre backfill (optional)
        """
        self.queue = work_queue
        self.store = store
        self.catalog = catalog

    def write_profiles(self, profiles: Sequence[ArtistProfile]) -> None:
        for profile in profiles:
            self.queue.enqueue(("artist_profile", profile.id), self.store.upsert_artist_profile, profile)

    def write_top_tracks(self, artist_id: str, tracks: Sequence[dict]) -> None:
        self.queue.enqueue(("top_tracks", artist_id), self.store.upsert_top_tracks, artist_id, list(tracks))

    def write_related_artists(self, artist_id: str, related: Sequence[dict]) -> None:
        self.queue.enqueue(("related", artist_id), self.store.upsert_related_artists, artist_id, list(related))

    def write_tracks(self, tracks: Sequence[dict]) -> None:
        ids: Tuple[str, ...] = tuple(sorted(t["id"] for t in tracks if t.get("id")))
        if ids:
            self.queue.enqueue(("tracks", ids), self.store.upsert_tracks, list(tracks))

    def request_genre_backfill(self, profile: ArtistProfile) -> bool:
        """Queue a catalog refetch for a profile missing genres or popularity."""
        if self.catalog is None or not profile.needs_backfill:
            return False
        return self.queue.enqueue(("genre_backfill", profile.id), self._backfill_artist, profile)

    def _backfill_artist(self, profile: ArtistProfile) -> None:
        fetched = self.catalog.get_artists([profile.id])
        refreshed = ArtistProfile.from_spotify(fetched[0]) if fetched else profile
        if not refreshed.genres:
            # Stop re-queueing artists the catalog has no genres for
            refreshed = ArtistProfile(
                id=refreshed.id,
                name=refreshed.name or profile.name,
                genres=("unknown",),
                popularity=refreshed.popularity,
                followers=refreshed.followers,
            )
        self.store.upsert_artist_profile(refreshed)
        logger.info(
            f"Backfilled {refreshed.name} ({refreshed.id}): genres={list(refreshed.genres)[:3]}"
        )
