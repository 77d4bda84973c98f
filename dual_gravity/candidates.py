"""
Candidate Seed Builder
======================

Builds the pool of next-track candidates for one selection:

1. Top tracks for every related artist (cache/store first, capped catalog
   fetches for the rest), fetched in parallel chunks.
2. One random pick per artist out of its top-10 valid tracks, so repeated
   calls do not keep surfacing the same hit.
3. While the pool is short on tracks or distinct artists, an ordered chain
   of fallback strategies runs:
       genre search -> store sample of unseen artists -> absolute store sample
   Once the deadline is near only the store strategies run.

Every candidate enters the pool through CandidatePool.register, which holds
the exclusion rules and resolves track-id collisions by source priority.
"""

import logging
import random
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import CandidateConfig, DEFAULT_CANDIDATE_CONFIG
from .errors import EmptyStoreError
from .models import (
    CandidateSeed,
    CandidateSource,
    PlayerGravityMap,
    TargetProfile,
    is_playable,
    primary_artist_id,
    primary_artist_name,
)
from .resolver import ArtistResolver, CATALOG_ERRORS
from .stats import ApiStatisticsTracker
from .utils import Deadline, chunked, normalize_name

logger = logging.getLogger(__name__)

# (artist_ids, exclusions, stats, deadline, allow_api) -> seeds
ChunkFetcher = Callable[[List[str], "Exclusions", ApiStatisticsTracker, Deadline, bool], List[CandidateSeed]]


# =============================================================================
# EXCLUSIONS AND THE POOL
# =============================================================================

@dataclass
class Exclusions:
    """What may never be offered: played tracks, the current track, the current artist."""
    played_track_ids: Set[str] = field(default_factory=set)
    current_track_id: Optional[str] = None
    current_artist_id: Optional[str] = None
    current_artist_name: Optional[str] = None

    @property
    def track_ids(self) -> Set[str]:
        ids = set(self.played_track_ids)
        if self.current_track_id:
            ids.add(self.current_track_id)
        return ids

    def rejection_reason(self, track: Dict) -> Optional[str]:
        """Why a track may not be a candidate, or None if it may."""
        track_id = track.get("id")
        if not track_id or not (track.get("name") or "").strip():
            return "missing_metadata"
        if not is_playable(track):
            return "unplayable"
        if track_id in self.played_track_ids:
            return "played"
        if track_id == self.current_track_id:
            return "current_track"
        current_name = normalize_name(self.current_artist_name)
        for artist in track.get("artists") or []:
            if self.current_artist_id and artist.get("id") == self.current_artist_id:
                return "current_artist"
            if current_name and normalize_name(artist.get("name")) == current_name:
                return "current_artist"
        return None

    def allows(self, track: Dict) -> bool:
        return self.rejection_reason(track) is None


class CandidatePool:
    """Track-id keyed candidate pool; the only way in is register()."""

    def __init__(self, exclusions: Exclusions):
        self.exclusions = exclusions
        self._seeds: Dict[str, CandidateSeed] = {}
        self.rejected: Counter = Counter()
        self.tiers_used: List[str] = []

    def register(self, seed: CandidateSeed) -> bool:
        """
        Admit a candidate if the exclusion rules allow it.

        On a track-id collision the more trusted source wins.

        Returns:
            True if the pool changed
        """
        reason = self.exclusions.rejection_reason(seed.track)
        if reason:
            self.rejected[reason] += 1
            return False
        track_id = seed.track_id
        existing = self._seeds.get(track_id)
        if existing is not None:
            if seed.source.priority < existing.source.priority:
                self._seeds[track_id] = seed
                return True
            self.rejected["duplicate"] += 1
            return False
        self._seeds[track_id] = seed
        return True

    def register_all(self, seeds: Iterable[CandidateSeed]) -> int:
        return sum(1 for seed in seeds if self.register(seed))

    @property
    def seeds(self) -> List[CandidateSeed]:
        return list(self._seeds.values())

    @property
    def track_ids(self) -> Set[str]:
        return set(self._seeds)

    @property
    def artist_ids(self) -> Set[str]:
        return {s.artist_id for s in self._seeds.values() if s.artist_id}

    @property
    def artist_names(self) -> Set[str]:
        return {normalize_name(s.artist_name) for s in self._seeds.values() if s.artist_name}

    def has_artist(self, artist_id: str) -> bool:
        return any(s.artist_id == artist_id for s in self._seeds.values())

    @property
    def unique_artist_count(self) -> int:
        keys = set()
        for seed in self._seeds.values():
            keys.add(seed.artist_id or normalize_name(seed.artist_name) or seed.track_id)
        return len(keys)

    def __len__(self) -> int:
        return len(self._seeds)

    def debug(self) -> Dict:
        return {
            "poolSize": len(self),
            "uniqueArtists": self.unique_artist_count,
            "rejected": dict(self.rejected),
            "tiersUsed": list(self.tiers_used),
            "sources": dict(Counter(s.source.value for s in self._seeds.values())),
        }


# =============================================================================
# FALLBACK STRATEGIES
# =============================================================================

@dataclass
class PoolConstraints:
    """What a complete pool needs, plus the request context strategies use."""
    min_pool: int
    min_unique_artists: int
    seed_genres: List[str]
    deadline: Deadline
    stats: ApiStatisticsTracker
    rng: random.Random

    def satisfied(self, pool: CandidatePool) -> bool:
        return len(pool) >= self.min_pool and pool.unique_artist_count >= self.min_unique_artists


class FallbackStrategy:
    """One rung of the fallback ladder: (pool, constraints) -> (pool, satisfied)."""
    name = "strategy"
    # Fast strategies still run once the deadline is near
    fast = False

    def __call__(self, pool: CandidatePool, constraints: PoolConstraints) -> Tuple[CandidatePool, bool]:
        raise NotImplementedError


class GenreSearchStrategy(FallbackStrategy):
    """Catalog genre search on the seed artist's genres, one track per new artist."""
    name = "genre_search"

    def __init__(self, catalog, backfiller, config: CandidateConfig = DEFAULT_CANDIDATE_CONFIG):
        self.catalog = catalog
        self.backfiller = backfiller
        self.config = config

    def __call__(self, pool, constraints):
        genres = [g for g in constraints.seed_genres if g and g != "unknown"]
        for genre in genres[:self.config.genre_search_max_genres]:
            constraints.deadline.check_cancelled()
            if constraints.deadline.expired:
                logger.warning("Deadline passed during genre search fallback")
                break
            try:
                with constraints.stats.timed_call("trackDetails"):
                    tracks = self.catalog.search_tracks_by_genre(genre, limit=self.config.genre_search_limit)
            except CATALOG_ERRORS as e:
                logger.warning(f"Genre search failed for '{genre}': {e}")
                continue
            constraints.stats.record_from_spotify("trackDetails", len(tracks))
            self.backfiller.write_tracks(tracks)

            seen_artists = pool.artist_ids | pool.artist_names
            added = 0
            for track in tracks:
                artist_key = primary_artist_id(track) or normalize_name(primary_artist_name(track))
                if not artist_key or artist_key in seen_artists:
                    continue
                if pool.register(CandidateSeed(track, CandidateSource.RECOMMENDATIONS)):
                    seen_artists.add(artist_key)
                    added += 1
            logger.info(f"Genre search '{genre}' added {added} candidates")
            if constraints.satisfied(pool):
                break
        return pool, constraints.satisfied(pool)


class StoreSampleStrategy(FallbackStrategy):
    """Random store tracks from artists not yet in the pool, one per artist."""
    name = "store_sample"
    fast = True

    def __init__(self, store):
        self.store = store

    def __call__(self, pool, constraints):
        exclusions = pool.exclusions
        needed = max(
            constraints.min_pool - len(pool),
            constraints.min_unique_artists - pool.unique_artist_count,
        )
        if needed <= 0:
            return pool, constraints.satisfied(pool)
        tracks = self.store.sample_tracks(
            limit=needed,
            exclude_track_ids=pool.track_ids | exclusions.track_ids,
            exclude_artist_ids=pool.artist_ids | {exclusions.current_artist_id},
            exclude_artist_names=pool.artist_names | {exclusions.current_artist_name or ""},
            tracks_per_artist=1,
            rng=constraints.rng,
        )
        added = pool.register_all(CandidateSeed(t, CandidateSource.EMBEDDING_FALLBACK) for t in tracks)
        logger.info(f"Store sample added {added} candidates from unseen artists")
        return pool, constraints.satisfied(pool)


class AbsoluteFallbackStrategy(FallbackStrategy):
    """
    Unconditional store sample filling the pool up to its minimum size.

    Never comes back empty-handed while the store has eligible tracks; an
    empty store is a configuration error.
    """
    name = "absolute_fallback"
    fast = True
    max_rounds = 3

    def __init__(self, store):
        self.store = store

    def __call__(self, pool, constraints):
        if self.store.count_tracks() == 0:
            logger.error("Durable store is empty; cannot fill the candidate pool")
            raise EmptyStoreError("durable store holds no tracks")

        exclusions = pool.exclusions
        tried: Set[str] = set()
        for _ in range(self.max_rounds):
            needed = constraints.min_pool - len(pool)
            if needed <= 0:
                break
            tracks = self.store.sample_tracks(
                limit=needed,
                exclude_track_ids=pool.track_ids | exclusions.track_ids | tried,
                exclude_artist_ids={exclusions.current_artist_id},
                exclude_artist_names={exclusions.current_artist_name or ""},
                rng=constraints.rng,
            )
            if not tracks:
                break
            tried.update(t["id"] for t in tracks)
            pool.register_all(CandidateSeed(t, CandidateSource.EMBEDDING_FALLBACK) for t in tracks)

        if len(pool) < constraints.min_pool:
            logger.warning(
                f"Absolute fallback exhausted eligible store tracks at {len(pool)}/{constraints.min_pool}"
            )
        return pool, constraints.satisfied(pool)


# =============================================================================
# BUILDER
# =============================================================================

class CandidateSeedBuilder:
    """
    Produces the candidate pool for one selection.

    Strategy:
        1. Related-artist top tracks, chunked and fetched in parallel
        2. One random valid top-10 track per artist
        3. Fallback chain until the pool meets its size guarantees
    """

    def __init__(
        self,
        resolver: ArtistResolver,
        store,
        config: CandidateConfig = DEFAULT_CANDIDATE_CONFIG,
        strategies: Optional[List[FallbackStrategy]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            resolver: Tiered catalog resolver
            store: Durable CatalogStore
            config: Candidate generation configuration
            strategies: Fallback chain (genre, store sample, absolute by default)
            rng: Random source for per-artist picks and store samples
        """
        self.resolver = resolver
        self.store = store
        self.config = config
        self.rng = rng or random.Random()
        self.strategies = strategies if strategies is not None else [
            GenreSearchStrategy(resolver.catalog, resolver.backfiller, config),
            StoreSampleStrategy(store),
            AbsoluteFallbackStrategy(store),
        ]

    def pick_track(self, tracks: List[Dict], exclusions: Exclusions) -> Optional[Dict]:
        """One random track among the first top_tracks_per_artist valid ones."""
        valid = [t for t in tracks if exclusions.allows(t)][:self.config.top_tracks_per_artist]
        if not valid:
            return None
        return self.rng.choice(valid)

    def fetch_chunk(
        self,
        artist_ids: List[str],
        exclusions: Exclusions,
        stats: ApiStatisticsTracker,
        deadline: Deadline,
        allow_api: bool = True,
    ) -> List[CandidateSeed]:
        """
        One candidate per artist in the chunk.

        Args:
            artist_ids: Related-artist ids of this chunk
            exclusions: Exclusion rules of the request
            stats: Statistics for this chunk
            deadline: Request deadline
            allow_api: False restricts the lookup to cache and store

        Returns:
            Seeds with source related_top_tracks, at most one per artist
        """
        deadline.check_cancelled()
        top_tracks = self.resolver.get_top_tracks(
            artist_ids,
            stats,
            deadline,
            max_api_fetches=self.config.max_missing_per_chunk if allow_api else 0,
        )
        seeds = []
        for artist_id in artist_ids:
            track = self.pick_track(top_tracks.get(artist_id) or [], exclusions)
            if track is not None:
                seeds.append(CandidateSeed(track, CandidateSource.RELATED_TOP_TRACKS))
        return seeds

    def build_pool(
        self,
        related_artist_ids: List[str],
        exclusions: Exclusions,
        seed_genres: List[str],
        stats: ApiStatisticsTracker,
        deadline: Deadline,
        on_chunk: Optional[Callable[[int, int], None]] = None,
        fetch: Optional[ChunkFetcher] = None,
    ) -> CandidatePool:
        """
        Build a complete pool from related artists plus fallback tiers.

        Args:
            related_artist_ids: Artists to draw top tracks from
            exclusions: Exclusion rules of the request
            seed_genres: Genres of the seed artist, for genre search
            stats: Request statistics
            deadline: Request deadline
            on_chunk: Called as on_chunk(done, total) after each chunk
            fetch: Chunk fetcher, fetch_chunk by default

        Returns:
            The pool, meeting its minimums whenever the store allows
        """
        deadline.check_cancelled()
        pool = CandidatePool(exclusions)
        artist_ids = [a for a in dict.fromkeys(related_artist_ids) if a]
        chunks = list(chunked(artist_ids, self.config.chunk_size))

        if chunks and not deadline.expired:
            self._fetch_related(pool, chunks, stats, deadline, on_chunk, fetch or self.fetch_chunk)
            pool.tiers_used.append("related_top_tracks")
        elif chunks:
            logger.warning("Deadline passed before related-artist stage, using store fallback")

        logger.info(
            f"Related artists yielded {len(pool)} candidates from {pool.unique_artist_count} artists"
        )
        return self.complete_pool(pool, seed_genres, stats, deadline)

    def _fetch_related(self, pool, chunks, stats, deadline, on_chunk, fetch) -> None:
        def run(chunk: List[str]) -> Tuple[List[CandidateSeed], ApiStatisticsTracker]:
            chunk_stats = ApiStatisticsTracker()
            # Chunks starting late keep to cache and store
            allow_api = deadline.fraction_elapsed() < self.config.related_budget_fraction
            return fetch(chunk, pool.exclusions, chunk_stats, deadline, allow_api), chunk_stats

        done = 0
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as executor:
            futures = [executor.submit(run, chunk) for chunk in chunks]
            for future in as_completed(futures):
                seeds, chunk_stats = future.result()
                pool.register_all(seeds)
                stats.merge(chunk_stats)
                done += 1
                if on_chunk:
                    on_chunk(done, len(chunks))

    def complete_pool(
        self,
        pool: CandidatePool,
        seed_genres: List[str],
        stats: ApiStatisticsTracker,
        deadline: Deadline,
    ) -> CandidatePool:
        """Run the fallback chain until the pool meets its minimums."""
        constraints = PoolConstraints(
            min_pool=self.config.min_candidate_pool,
            min_unique_artists=self.config.min_unique_artists,
            seed_genres=list(seed_genres or []),
            deadline=deadline,
            stats=stats,
            rng=self.rng,
        )
        if constraints.satisfied(pool):
            return pool

        logger.info(
            f"Pool deficient ({len(pool)}/{constraints.min_pool} tracks, "
            f"{pool.unique_artist_count}/{constraints.min_unique_artists} artists), escalating"
        )
        for strategy in self.strategies:
            deadline.check_cancelled()
            if not strategy.fast and deadline.near(self.config.deadline_reserve_seconds):
                logger.warning(f"Deadline near, skipping {strategy.name}")
                continue
            pool, satisfied = strategy(pool, constraints)
            pool.tiers_used.append(strategy.name)
            if satisfied:
                break
        logger.info(f"Pool complete: {len(pool)} candidates, {pool.unique_artist_count} artists")
        return pool

    # =========================================================================
    # TARGET INSERTION
    # =========================================================================

    def insert_targets(
        self,
        pool: CandidatePool,
        target_profiles: Dict[str, Optional[TargetProfile]],
        gravities: PlayerGravityMap,
        round_number: int,
        stats: ApiStatisticsTracker,
        deadline: Deadline,
    ) -> List[CandidateSeed]:
        """
        Add a player's target artist once gravity or round allows it.

        Applies per player when gravity >= target_insertion_gravity or the
        round reached target_insertion_round, and the target is not already
        in the pool.
        """
        added = []
        for player_id, target in target_profiles.items():
            if target is None or not target.spotify_id:
                continue
            gravity = gravities.get(player_id, 0.0)
            if gravity < self.config.target_insertion_gravity and round_number < self.config.target_insertion_round:
                continue
            if pool.has_artist(target.spotify_id):
                logger.info(f"Target artist {target.artist.name} already in pool")
                continue
            deadline.check_cancelled()
            tracks = self.resolver.get_top_tracks([target.spotify_id], stats, deadline).get(target.spotify_id) or []
            valid = [t for t in tracks if pool.exclusions.allows(t)]
            if not valid:
                logger.warning(f"No valid tracks for target artist {target.artist.name}")
                continue
            seed = CandidateSeed(valid[0], CandidateSource.TARGET_BOOST)
            if pool.register(seed):
                added.append(seed)
                logger.info(
                    f"Inserted target artist {target.artist.name} for {player_id} "
                    f"(gravity={gravity:.2f}, round={round_number})"
                )
        return added
