"""
Dual Gravity Selection Pipeline
===============================

Orchestrates one selection across three protocol stages:

1. Init        resolve targets, update gravities, find the seed artist and
               the related artists to draw candidates from
2. Candidates  per chunk of 5 artist ids: one top track per artist plus
               the artists' profiles (chunks run in parallel)
3. Score       complete the pool, insert late-game targets, score every
               candidate and select the balanced 3-3-3 option set

Each stage takes and returns a plain dict so it can sit behind any
transport. A stage that fails returns {"error": message}; the in-process
orchestrator (run_selection) turns that into a StageError.
"""

import json
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .backfill import Backfiller, WorkQueue
from .cache import TTLCache
from .candidates import CandidatePool, CandidateSeedBuilder, Exclusions
from .config import (
    CandidateConfig,
    DEFAULT_CACHE_CONFIG,
    DEFAULT_CANDIDATE_CONFIG,
    DEFAULT_GRAVITY_CONFIG,
    DEFAULT_SELECTOR_CONFIG,
    GravityConfig,
    PLAYER_IDS,
    SelectorConfig,
    STORE_PATH,
)
from .diversity import DiversitySelector
from .errors import DualGravityError, StageError
from .gravity import (
    CONVERGENCE,
    DEAD_ZONE,
    apply_gravity_updates,
    get_exploration_phase,
    hard_convergence_active,
    influence_zone,
    normalize_gravities,
)
from .logging_utils import stage_timer
from .models import (
    ArtistProfile,
    CandidateSeed,
    LastSelection,
    OptionTrack,
    TargetArtist,
    TargetProfile,
    primary_artist,
)
from .resolver import ArtistResolver
from .scoring import ScoringEngine
from .spotify_client import SpotifyClient
from .stats import ApiStatisticsTracker
from .store import CatalogStore
from .utils import Deadline, is_valid_spotify_id

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]


def protocol_stage(name: str):
    """Turn a stage's exceptions into an {"error": message} payload."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs) -> Dict[str, Any]:
            try:
                return func(*args, **kwargs)
            except StageError as e:
                logger.error(f"Stage {name} failed: {e.message}")
                return {"error": e.message}
            except DualGravityError as e:
                logger.error(f"Stage {name} failed: {e}")
                return {"error": str(e)}
            except Exception as e:
                logger.exception(f"Stage {name} crashed")
                return {"error": f"{type(e).__name__}: {e}"}
        return wrapper
    return decorator


def _target_profiles_from_dict(data: Optional[Dict]) -> Dict[str, Optional[TargetProfile]]:
    data = data or {}
    return {
        player_id: TargetProfile.from_dict(data[player_id]) if data.get(player_id) else None
        for player_id in PLAYER_IDS
    }


def _target_profiles_to_dict(profiles: Dict[str, Optional[TargetProfile]]) -> Dict[str, Optional[Dict]]:
    return {player_id: p.to_dict() if p else None for player_id, p in profiles.items()}


@dataclass
class SelectionOutput:
    """Result of one full selection."""
    option_tracks: List[Dict]
    updated_gravities: Dict[str, float]
    target_profiles: Dict[str, Optional[Dict]]
    exploration_phase: Dict
    hard_convergence_active: bool
    debug: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "optionTracks": self.option_tracks,
            "updatedGravities": self.updated_gravities,
            "targetProfiles": self.target_profiles,
            "explorationPhase": self.exploration_phase,
            "hardConvergenceActive": self.hard_convergence_active,
            "debug": self.debug,
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)


class DualGravityEngine:
    """
    The selection engine and its three protocol stages.

    Usage:
        with DualGravityEngine() as engine:
            output = engine.run_selection(request, progress=print)
            print(output.to_json())
    """

    def __init__(
        self,
        catalog=None,
        store: Optional[CatalogStore] = None,
        cache: Optional[TTLCache] = None,
        work_queue: Optional[WorkQueue] = None,
        candidate_config: CandidateConfig = DEFAULT_CANDIDATE_CONFIG,
        selector_config: SelectorConfig = DEFAULT_SELECTOR_CONFIG,
        gravity_config: GravityConfig = DEFAULT_GRAVITY_CONFIG,
        seed: Optional[int] = None,
    ):
        """
        Initialize the engine and its collaborators.

        Args:
            catalog: Catalog client (SpotifyClient from env credentials if None)
            store: Durable store (SQLite at STORE_PATH if None)
            cache: Process-local cache (fresh TTLCache if None)
            work_queue: Background queue (a new one is started if None)
            candidate_config: Candidate pool configuration
            selector_config: Option selector configuration
            gravity_config: Gravity limits and deltas
            seed: Seed for every random choice, for reproducible runs
        """
        self.catalog = catalog if catalog is not None else SpotifyClient()
        self._owns_store = store is None
        self.store = store if store is not None else CatalogStore(STORE_PATH)
        self.cache = cache if cache is not None else TTLCache.from_config(DEFAULT_CACHE_CONFIG)
        self.work_queue = work_queue if work_queue is not None else WorkQueue(DEFAULT_CACHE_CONFIG.backfill_queue_size)

        self.candidate_config = candidate_config
        self.gravity_config = gravity_config
        self.backfiller = Backfiller(self.work_queue, self.store, self.catalog)
        self.resolver = ArtistResolver(
            self.catalog, self.store, self.cache, self.backfiller, candidate_config.max_workers
        )
        self.builder = CandidateSeedBuilder(
            self.resolver, self.store, candidate_config, rng=random.Random(seed)
        )
        self.scorer = ScoringEngine(
            self.resolver,
            self.store,
            gravity_config=gravity_config,
            candidate_config=candidate_config,
        )
        self.selector = DiversitySelector(selector_config, gravity_config, rng=np.random.default_rng(seed))

    def close(self) -> None:
        """Finish background writes and release the store."""
        self.work_queue.close()
        if self._owns_store:
            self.store.close()

    def __enter__(self) -> "DualGravityEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _deadline(self, deadline: Optional[Deadline]) -> Deadline:
        return deadline or Deadline(self.candidate_config.deadline_seconds)

    # =========================================================================
    # STAGE 1: INIT
    # =========================================================================

    @protocol_stage("init")
    def stage_init(self, request: Dict, deadline: Optional[Deadline] = None) -> Dict:
        """
        Resolve targets, update gravities and pick the related artists.

        Args:
            request: {playbackState, roundNumber, turnNumber, activePlayerId,
                playerTargets, playerGravities, playedTrackIds, lastSelection?}
            deadline: Request deadline (a fresh one if None)

        Returns:
            {targetProfiles, seedArtistId, seedArtistName, currentTrack,
            relatedArtistIds, updatedGravities, explorationPhase,
            hardConvergenceActive, ogDrift, debug} or {error}
        """
        started = time.time()
        deadline = self._deadline(deadline)
        deadline.check_cancelled()
        stats = ApiStatisticsTracker()
        round_number = int(request.get("roundNumber") or 1)
        active_player = request.get("activePlayerId") or PLAYER_IDS[0]

        raw_targets = request.get("playerTargets") or {}
        targets = {
            player_id: TargetArtist(name=raw["name"], id=raw.get("id")) if raw and raw.get("name") else None
            for player_id, raw in ((p, raw_targets.get(p)) for p in PLAYER_IDS)
        }
        with stage_timer("resolve_targets", logger):
            target_profiles = self.resolver.resolve_targets(targets, stats, deadline)

        item = (request.get("playbackState") or {}).get("item") or {}
        track_id = item.get("id")
        if not track_id:
            raise StageError("init", "No track is currently playing")
        current_track = self.resolver.get_track(track_id, stats) or (item if item.get("artists") else None)
        if current_track is None:
            raise StageError("init", f"Current track {track_id} not found")

        seed_artist = primary_artist(current_track)
        seed_artist_id = seed_artist.get("id")
        if not is_valid_spotify_id(seed_artist_id):
            raise StageError("init", f"Invalid seed artist id: {seed_artist_id!r}")

        gravities = apply_gravity_updates(
            request.get("playerGravities"),
            LastSelection.from_dict(request.get("lastSelection")),
            self.gravity_config,
        )

        deadline.check_cancelled()
        related_ids = [r["id"] for r in self.resolver.get_related_artists(seed_artist_id, stats)]
        seed_related_count = len(related_ids)

        zone = influence_zone(gravities[active_player], self.gravity_config)
        target = target_profiles.get(active_player)
        target_related_count = 0
        if target is not None and target.spotify_id:
            if zone == DEAD_ZONE:
                logger.info(f"{active_player} in dead zone, skipping target-related artists")
            else:
                target_related = [r["id"] for r in self.resolver.get_related_artists(target.spotify_id, stats)]
                target_related_count = len(target_related)
                related_ids.extend(target_related)
            if zone == CONVERGENCE:
                logger.info(f"{active_player} converging, injecting target artist {target.artist.name}")
                related_ids.append(target.spotify_id)

        related_ids = [a for a in dict.fromkeys(related_ids) if a != seed_artist_id]
        phase = get_exploration_phase(round_number)
        hard_convergence = hard_convergence_active(round_number)

        return {
            "targetProfiles": _target_profiles_to_dict(target_profiles),
            "seedArtistId": seed_artist_id,
            "seedArtistName": seed_artist.get("name"),
            "currentTrack": current_track,
            "relatedArtistIds": related_ids,
            "updatedGravities": gravities,
            "explorationPhase": phase.to_dict(),
            "hardConvergenceActive": hard_convergence,
            "ogDrift": phase.og_drift,
            "debug": {
                "influenceZone": zone,
                "seedRelatedArtists": seed_related_count,
                "targetRelatedArtists": target_related_count,
                "turnNumber": request.get("turnNumber"),
                "apiStatistics": stats.get_statistics(),
                "executionTimeMs": round((time.time() - started) * 1000, 1),
            },
        }

    # =========================================================================
    # STAGE 2: CANDIDATES
    # =========================================================================

    @protocol_stage("candidates")
    def stage_candidates(
        self,
        request: Dict,
        deadline: Optional[Deadline] = None,
        allow_api: bool = True,
    ) -> Dict:
        """
        One candidate per artist of a chunk, plus the artists' profiles.

        Args:
            request: {artistIds, playedTrackIds, currentArtistId,
                currentTrackId?, currentArtistName?}
            deadline: Request deadline (a fresh one if None)
            allow_api: False keeps top-track lookups to cache and store

        Returns:
            {seeds, profiles, debug} or {error}
        """
        started = time.time()
        deadline = self._deadline(deadline)
        stats = ApiStatisticsTracker()
        artist_ids = list(request.get("artistIds") or [])
        exclusions = Exclusions(
            played_track_ids=set(request.get("playedTrackIds") or []),
            current_track_id=request.get("currentTrackId"),
            current_artist_id=request.get("currentArtistId"),
            current_artist_name=request.get("currentArtistName"),
        )
        seeds = self.builder.fetch_chunk(artist_ids, exclusions, stats, deadline, allow_api)
        profile_ids = artist_ids + [s.artist_id for s in seeds if s.artist_id]
        profiles = self.resolver.get_profiles(profile_ids, stats, deadline)
        return {
            "seeds": [s.to_dict() for s in seeds],
            "profiles": [p.to_dict() for p in profiles.values()],
            "debug": {
                "artistCount": len(artist_ids),
                "seedCount": len(seeds),
                "apiStatistics": stats.get_statistics(),
                "executionTimeMs": round((time.time() - started) * 1000, 1),
            },
        }

    # =========================================================================
    # STAGE 3: SCORE
    # =========================================================================

    @protocol_stage("score")
    def stage_score(self, request: Dict, deadline: Optional[Deadline] = None) -> Dict:
        """
        Score the pool and select the option set.

        Args:
            request: {seeds, profiles, targetProfiles, playerGravities,
                currentTrack, relatedArtistIds, roundNumber, currentPlayerId,
                ogDrift, hardConvergenceActive, playedTrackIds}
            deadline: Request deadline (a fresh one if None)

        Returns:
            {optionTracks, debug} or {error}
        """
        started = time.time()
        deadline = self._deadline(deadline)
        deadline.check_cancelled()
        stats = ApiStatisticsTracker()

        current_track = request.get("currentTrack") or {}
        current_artist = primary_artist(current_track)
        current_artist_id = current_artist.get("id")
        round_number = int(request.get("roundNumber") or 1)
        current_player = request.get("currentPlayerId") or PLAYER_IDS[0]
        gravities = normalize_gravities(request.get("playerGravities"), self.gravity_config)
        target_profiles = _target_profiles_from_dict(request.get("targetProfiles"))
        hard_convergence = request.get("hardConvergenceActive")
        if hard_convergence is None:
            hard_convergence = hard_convergence_active(round_number)

        pool = CandidatePool(Exclusions(
            played_track_ids=set(request.get("playedTrackIds") or []),
            current_track_id=current_track.get("id"),
            current_artist_id=current_artist_id,
            current_artist_name=current_artist.get("name"),
        ))
        for raw in request.get("seeds") or []:
            pool.register(CandidateSeed.from_dict(raw))
        received = len(pool)

        profiles = {
            p.id: p for p in (ArtistProfile.from_dict(raw) for raw in request.get("profiles") or [])
        }
        relationships = {}
        if current_artist_id:
            relationships[current_artist_id] = set(request.get("relatedArtistIds") or [])
            if current_artist_id not in profiles:
                profiles.update(self.resolver.get_profiles([current_artist_id], stats, deadline))
        current_profile = profiles.get(current_artist_id) if current_artist_id else None

        with stage_timer("complete_pool", logger):
            pool = self.builder.complete_pool(
                pool, list(current_profile.genres) if current_profile else [], stats, deadline
            )
        inserted = self.builder.insert_targets(pool, target_profiles, gravities, round_number, stats, deadline)

        with stage_timer("score_candidates", logger):
            scoring = self.scorer.score_candidates(
                pool,
                current_track,
                profiles,
                relationships,
                target_profiles,
                gravities,
                current_player,
                round_number,
                float(request.get("ogDrift") or 0.0),
                stats,
                deadline,
            )

        selection = self.selector.select(
            scoring.metrics,
            round_number,
            target_profiles,
            gravities,
            current_player,
            hard_convergence,
        )

        return {
            "optionTracks": [OptionTrack.from_metrics(m).to_dict() for m in selection.selected],
            "debug": {
                "seedsReceived": received,
                "pool": pool.debug(),
                "targetsInserted": [s.artist_name for s in inserted],
                "currentSongAttraction": scoring.current_song_attraction,
                "scoring": scoring.debug,
                "selection": selection.debug,
                "filteredArtistNames": sorted(selection.filtered_artist_names),
                "genreStatistics": self.store.genre_statistics(),
                "apiStatistics": stats.get_statistics(),
                "executionTimeMs": round((time.time() - started) * 1000, 1),
            },
        }

    # =========================================================================
    # ORCHESTRATOR
    # =========================================================================

    def run_selection(
        self,
        request: Dict,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SelectionOutput:
        """
        Run all three stages for one selection.

        Args:
            request: Stage-1 request payload
            progress: Called as progress(stage_label, percent) at milestones
            cancel_event: Set by the caller to abandon the selection

        Returns:
            SelectionOutput with the option tracks and updated gravities

        Raises:
            StageError: A stage returned {"error": ...}
            PipelineCancelled: cancel_event was set
        """
        deadline = Deadline(self.candidate_config.deadline_seconds, cancel_event)
        report = progress or (lambda label, pct: None)

        report("init", 0)
        with stage_timer("init", logger):
            init = self.stage_init(request, deadline)
        self._check_response("init", init, deadline)
        report("init", 10)

        current_track = init["currentTrack"]
        current_artist = primary_artist(current_track)
        played = list(request.get("playedTrackIds") or [])
        profiles: Dict[str, Dict] = {}
        profiles_lock = threading.Lock()

        def fetch_via_stage(artist_ids, exclusions, chunk_stats, chunk_deadline, allow_api):
            response = self.stage_candidates(
                {
                    "artistIds": artist_ids,
                    "playedTrackIds": played,
                    "currentArtistId": init["seedArtistId"],
                    "currentTrackId": current_track.get("id"),
                    "currentArtistName": current_artist.get("name"),
                },
                chunk_deadline,
                allow_api,
            )
            self._check_response("candidates", response, chunk_deadline)
            with profiles_lock:
                for raw in response["profiles"]:
                    profiles.setdefault(raw["id"], raw)
            return [CandidateSeed.from_dict(raw) for raw in response["seeds"]]

        def on_chunk(done: int, total: int) -> None:
            report("candidates", 10 + int(60 * done / total))

        stats = ApiStatisticsTracker()
        with stage_timer("candidates", logger):
            pool = self.builder.build_pool(
                init["relatedArtistIds"],
                Exclusions(set(played), current_track.get("id"), init["seedArtistId"], current_artist.get("name")),
                self._seed_genres(init["seedArtistId"], stats),
                stats,
                deadline,
                on_chunk=on_chunk,
                fetch=fetch_via_stage,
            )
        report("scoring", 75)

        with stage_timer("score", logger):
            scored = self.stage_score(
                {
                    "seeds": [s.to_dict() for s in pool.seeds],
                    "profiles": list(profiles.values()),
                    "targetProfiles": init["targetProfiles"],
                    "playerGravities": init["updatedGravities"],
                    "currentTrack": current_track,
                    "relatedArtistIds": init["relatedArtistIds"],
                    "roundNumber": request.get("roundNumber", 1),
                    "currentPlayerId": request.get("activePlayerId", PLAYER_IDS[0]),
                    "ogDrift": init["ogDrift"],
                    "hardConvergenceActive": init["hardConvergenceActive"],
                    "playedTrackIds": played,
                },
                deadline,
            )
        self._check_response("score", scored, deadline)
        report("finalize", 100)

        return SelectionOutput(
            option_tracks=scored["optionTracks"],
            updated_gravities=init["updatedGravities"],
            target_profiles=init["targetProfiles"],
            exploration_phase=init["explorationPhase"],
            hard_convergence_active=init["hardConvergenceActive"],
            debug={
                "init": init["debug"],
                "candidates": {"pool": pool.debug(), "apiStatistics": stats.get_statistics()},
                "score": scored["debug"],
                "elapsedSeconds": round(deadline.elapsed(), 3),
            },
        )

    def _seed_genres(self, artist_id: str, stats: ApiStatisticsTracker) -> List[str]:
        profile = self.resolver.get_profiles([artist_id], stats).get(artist_id)
        return list(profile.genres) if profile else []

    @staticmethod
    def _check_response(stage: str, response: Dict, deadline: Deadline) -> None:
        if "error" not in response:
            return
        # A cancelled request reports the cancellation, not the stage failure it caused
        deadline.check_cancelled()
        raise StageError(stage, response["error"])
