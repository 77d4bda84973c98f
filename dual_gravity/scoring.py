"""
Attraction / Similarity Scoring
===============================

Scores every candidate against the current song and both players' targets.

Mathematical Formulation:
-------------------------

Similarity (current track+artist -> candidate track+artist):

    S = 0.5·genre + 0.1·relationship + 0.075·trackPop
        + 0.075·artistPop + 0.2·era + 0.05·followers

Attraction (candidate artist -> target artist), artist-level factors only:

    A = 0.4·genre + 0.3·relationship + 0.15·artistPop + 0.15·followers

Final score for the active player p at round r:

    G      = gravity_p × A_p              (× (1 + 2·gravity_p) for p's own target
                                            once gravity_p ≥ 0.35)
    stab   = S × (1 − ogDrift) + 0.12
    final  = clip(max(S × floor(r), stab + G × (0.5 + 0.7·r)), 0, 1)

where floor(r) is 0.4 for r ≤ 2, 0.15 for r ≤ 5 and 0.05 afterwards.
"""

import logging
from typing import Dict, List, NamedTuple, Optional, Set, Tuple

import numpy as np

from .candidates import CandidatePool
from .config import (
    AttractionWeights,
    CandidateConfig,
    DEFAULT_ATTRACTION_WEIGHTS,
    DEFAULT_CANDIDATE_CONFIG,
    DEFAULT_GRAVITY_CONFIG,
    DEFAULT_SIMILARITY_WEIGHTS,
    DEFAULT_TRACK_POPULARITY,
    GravityConfig,
    OG_CONSTANT,
    SimilarityWeights,
)
from .genre_graph import avg_max_genre_similarity
from .models import (
    ArtistProfile,
    CandidateSeed,
    CandidateSource,
    CandidateTrackMetrics,
    GenreSimilarity,
    PlayerGravityMap,
    ScoringComponents,
    TargetProfile,
    primary_artist_id,
    release_date,
)
from .stats import ApiStatisticsTracker
from .utils import Deadline, is_valid_spotify_id, normalize_name, popularity_band, release_year

logger = logging.getLogger(__name__)

ArtistRelationships = Dict[str, Set[str]]


# =============================================================================
# FACTOR CLOSENESS
# =============================================================================

def follower_similarity(followers_a: Optional[int], followers_b: Optional[int]) -> float:
    """
    Log-scale closeness of two follower counts.

    A 1000x difference (three orders of magnitude) or more scores 0.
    Missing or zero counts are neutral (0.5).
    """
    if not followers_a or not followers_b:
        return 0.5
    log_diff = abs(np.log10(max(followers_a, 1)) - np.log10(max(followers_b, 1)))
    return float(1 - min(log_diff / 3, 1))


def popularity_similarity(popularity_a: Optional[int], popularity_b: Optional[int]) -> float:
    if popularity_a is None or popularity_b is None:
        return 0.5
    return 1 - abs(popularity_a - popularity_b) / 100


def era_similarity(date_a: Optional[str], date_b: Optional[str]) -> float:
    """Release-year closeness; 30 years apart or more scores 0."""
    year_a = release_year(date_a)
    year_b = release_year(date_b)
    if year_a is None or year_b is None:
        return 0.5
    return max(0.0, 1 - abs(year_a - year_b) / 30)


def relationship_score(
    base_artist_id: Optional[str],
    candidate_artist_id: Optional[str],
    profiles: Dict[str, ArtistProfile],
    relationships: ArtistRelationships,
) -> float:
    """
    How related two artists are.

    1.0 for the same artist or a known related-artists edge; otherwise
    genre overlap scaled into [0.3, 1.0]. Missing ids or profiles are
    neutral (0.5).
    """
    if base_artist_id and candidate_artist_id and base_artist_id == candidate_artist_id:
        return 1.0
    if not base_artist_id or not candidate_artist_id:
        return 0.5
    if candidate_artist_id in relationships.get(base_artist_id, ()):
        return 1.0
    base = profiles.get(base_artist_id)
    candidate = profiles.get(candidate_artist_id)
    if base is None or candidate is None:
        return 0.5
    return avg_max_genre_similarity(base.genres, candidate.genres).score * 0.7 + 0.3


def _artist_popularity_similarity(
    base_artist_id: Optional[str],
    candidate_artist_id: Optional[str],
    profiles: Dict[str, ArtistProfile],
) -> float:
    if not base_artist_id or not candidate_artist_id:
        return 0.5
    base = profiles.get(base_artist_id)
    candidate = profiles.get(candidate_artist_id)
    if base is None or candidate is None:
        return 0.5
    base_pop = base.popularity if base.popularity is not None else 50
    candidate_pop = candidate.popularity if candidate.popularity is not None else 50
    return 1 - abs(base_pop - candidate_pop) / 100


# =============================================================================
# SIMILARITY AND ATTRACTION
# =============================================================================

class TrackMetadata(NamedTuple):
    """The track-level facts similarity is computed from."""
    artist_id: Optional[str]
    popularity: int
    release_date: Optional[str]
    genres: Tuple[str, ...]

    @classmethod
    def from_track(cls, track: Dict, profile: Optional[ArtistProfile]) -> "TrackMetadata":
        popularity = track.get("popularity")
        return cls(
            artist_id=primary_artist_id(track),
            popularity=popularity if popularity is not None else DEFAULT_TRACK_POPULARITY,
            release_date=release_date(track),
            genres=profile.genres if profile else (),
        )


def compute_similarity(
    base: TrackMetadata,
    candidate: TrackMetadata,
    profiles: Dict[str, ArtistProfile],
    relationships: ArtistRelationships,
    weights: SimilarityWeights = DEFAULT_SIMILARITY_WEIGHTS,
) -> Tuple[float, ScoringComponents]:
    """
    Weighted similarity between the current track and a candidate.

    Args:
        base: Metadata of the currently playing track
        candidate: Metadata of the candidate track
        profiles: Known artist profiles by id
        relationships: Related-artist edges keyed by base artist id
        weights: Factor weights

    Returns:
        (score in [0, 1], per-factor components)
    """
    genre = avg_max_genre_similarity(base.genres, candidate.genres)
    components = ScoringComponents(
        genre=genre,
        relationship=relationship_score(base.artist_id, candidate.artist_id, profiles, relationships),
        track_pop=max(0.0, 1 - abs(base.popularity - candidate.popularity) / 100),
        artist_pop=_artist_popularity_similarity(base.artist_id, candidate.artist_id, profiles),
        era=era_similarity(base.release_date, candidate.release_date),
        followers=follower_similarity(
            _followers(profiles, base.artist_id),
            _followers(profiles, candidate.artist_id),
        ),
    )
    score = (
        weights.genre * genre.score
        + weights.relationship * components.relationship
        + weights.track_popularity * components.track_pop
        + weights.artist_popularity * components.artist_pop
        + weights.era * components.era
        + weights.followers * components.followers
    )
    return score, components


def _followers(profiles: Dict[str, ArtistProfile], artist_id: Optional[str]) -> Optional[int]:
    profile = profiles.get(artist_id) if artist_id else None
    return profile.followers if profile else None


def strict_artist_similarity(
    base: ArtistProfile,
    candidate: ArtistProfile,
    profiles: Dict[str, ArtistProfile],
    relationships: ArtistRelationships,
    weights: AttractionWeights = DEFAULT_ATTRACTION_WEIGHTS,
) -> Tuple[float, ScoringComponents]:
    """Artist-to-artist similarity, ignoring which track was sampled."""
    if base.id == candidate.id:
        return 1.0, ScoringComponents(
            genre=GenreSimilarity(1.0),
            relationship=1.0,
            track_pop=1.0,
            artist_pop=1.0,
            era=1.0,
            followers=1.0,
        )

    genre = avg_max_genre_similarity(base.genres, candidate.genres)
    components = ScoringComponents(
        genre=genre,
        relationship=relationship_score(base.id, candidate.id, profiles, relationships),
        artist_pop=popularity_similarity(base.popularity, candidate.popularity),
        followers=follower_similarity(base.followers, candidate.followers),
    )
    score = (
        weights.genre * genre.score
        + weights.relationship * components.relationship
        + weights.artist_popularity * components.artist_pop
        + weights.followers * components.followers
    )
    return score, components


def compute_attraction(
    profile: Optional[ArtistProfile],
    target: Optional[TargetProfile],
    profiles: Dict[str, ArtistProfile],
    relationships: ArtistRelationships,
    weights: AttractionWeights = DEFAULT_ATTRACTION_WEIGHTS,
) -> float:
    """Attraction of an artist to a target; 0 when either side is unknown."""
    if profile is None or target is None:
        return 0.0
    score, _ = strict_artist_similarity(target.as_artist_profile(), profile, profiles, relationships, weights)
    return score


def is_target_of(target: Optional[TargetProfile], artist_id: Optional[str], artist_name: Optional[str]) -> bool:
    """Id match when both ids are catalog ids, name match otherwise."""
    if target is None:
        return False
    if is_valid_spotify_id(target.spotify_id) and is_valid_spotify_id(artist_id):
        return target.spotify_id == artist_id
    return normalize_name(target.artist.name) == normalize_name(artist_name)


def floor_ratio(round_number: int) -> float:
    if round_number <= 2:
        return 0.4
    if round_number <= 5:
        return 0.15
    return 0.05


def compute_gravity_score(
    gravity: float,
    attraction: float,
    is_own_target: bool,
    config: GravityConfig = DEFAULT_GRAVITY_CONFIG,
) -> float:
    score = gravity * attraction
    if is_own_target and gravity >= config.boost_threshold:
        score *= 1.0 + gravity * config.boost_factor
    return score


def compute_final_score(
    sim_score: float,
    gravity_score: float,
    og_drift: float,
    round_number: int,
) -> Tuple[float, float]:
    """
    Blend similarity and gravity into the final ranking score.

    Returns:
        (stabilized score, final score clipped to [0, 1])
    """
    stabilized = sim_score * (1 - og_drift) + OG_CONSTANT
    final = stabilized + gravity_score * (0.5 + round_number * 0.7)
    final = max(sim_score * floor_ratio(round_number), final)
    return stabilized, float(np.clip(final, 0.0, 1.0))


# =============================================================================
# ENGINE
# =============================================================================

class ScoringResult(NamedTuple):
    metrics: List[CandidateTrackMetrics]
    current_song_attraction: float
    debug: Dict


class ScoringEngine:
    """
    Scores a candidate pool for the active player.

    Before scoring, a pool with too few distinct artists is topped up from
    the durable store, and candidates whose artist id or profile is missing
    are resolved on demand.
    """

    def __init__(
        self,
        resolver=None,
        store=None,
        similarity_weights: SimilarityWeights = DEFAULT_SIMILARITY_WEIGHTS,
        attraction_weights: AttractionWeights = DEFAULT_ATTRACTION_WEIGHTS,
        gravity_config: GravityConfig = DEFAULT_GRAVITY_CONFIG,
        candidate_config: CandidateConfig = DEFAULT_CANDIDATE_CONFIG,
    ):
        """
        Args:
            resolver: ArtistResolver for on-demand ids and profiles (optional)
            store: CatalogStore for the artist-diversity top-up (optional)
            similarity_weights: Weights of the similarity model
            attraction_weights: Weights of the attraction model
            gravity_config: Gravity limits and target boost
            candidate_config: Minimum distinct artists before scoring
        """
        self.resolver = resolver
        self.store = store
        self.similarity_weights = similarity_weights
        self.attraction_weights = attraction_weights
        self.gravity_config = gravity_config
        self.candidate_config = candidate_config

    def ensure_artist_diversity(self, pool: CandidatePool) -> int:
        """
        Top up a pool with too few distinct artists from the store.

        Blocks on the store; one track per new artist.

        Returns:
            Number of candidates added
        """
        names = pool.artist_names
        minimum = self.candidate_config.min_scoring_artists
        if self.store is None or len(names) >= minimum:
            return 0

        needed = minimum - len(names)
        logger.warning(f"Unique artist deficit ({len(names)} < {minimum}), fetching {needed} store artists")
        exclusions = pool.exclusions
        tracks = self.store.sample_tracks(
            limit=needed,
            exclude_track_ids=pool.track_ids | exclusions.track_ids,
            exclude_artist_ids=pool.artist_ids | {exclusions.current_artist_id},
            exclude_artist_names=names | {exclusions.current_artist_name or ""},
            tracks_per_artist=1,
        )
        added = pool.register_all(CandidateSeed(t, CandidateSource.RECOMMENDATIONS) for t in tracks)
        if added:
            logger.info(f"Artist-diversity top-up added {added} candidates")
        else:
            logger.warning("Artist-diversity top-up found no store tracks")
        return added

    def _resolve_missing(
        self,
        seeds: List[CandidateSeed],
        profiles: Dict[str, ArtistProfile],
        stats: ApiStatisticsTracker,
        deadline: Deadline,
    ) -> Tuple[List[CandidateSeed], int]:
        """Fill in invalid artist ids by name and fetch missing profiles."""
        if self.resolver is None:
            return seeds, 0

        deadline.check_cancelled()
        unnamed = [s.artist_name for s in seeds if not is_valid_spotify_id(s.artist_id) and s.artist_name]
        by_name = self.resolver.resolve_names(
            unnamed, stats, deadline, max_api_searches=self.candidate_config.max_name_searches
        ) if unnamed else {}

        resolved = []
        for seed in seeds:
            if not is_valid_spotify_id(seed.artist_id) and seed.artist_name:
                profile = by_name.get(normalize_name(seed.artist_name))
                if profile is not None:
                    profiles.setdefault(profile.id, profile)
                    seed = CandidateSeed(_with_primary_artist_id(seed.track, profile.id), seed.source)
            resolved.append(seed)

        missing = [
            s.artist_id for s in resolved
            if is_valid_spotify_id(s.artist_id) and s.artist_id not in profiles
        ]
        fetched = self.resolver.get_profiles(missing, stats, deadline) if missing else {}
        profiles.update(fetched)
        if missing:
            logger.info(f"Fetched {len(fetched)}/{len(set(missing))} missing artist profiles on demand")

        for profile in profiles.values():
            if profile.needs_backfill:
                self.resolver.backfiller.request_genre_backfill(profile)
        return resolved, len(fetched)

    def score_candidates(
        self,
        pool: CandidatePool,
        current_track: Dict,
        profiles: Dict[str, ArtistProfile],
        relationships: ArtistRelationships,
        target_profiles: Dict[str, Optional[TargetProfile]],
        gravities: PlayerGravityMap,
        current_player_id: str,
        round_number: int,
        og_drift: float,
        stats: Optional[ApiStatisticsTracker] = None,
        deadline: Optional[Deadline] = None,
    ) -> ScoringResult:
        """
        Score every candidate of a pool.

        Args:
            pool: Candidate pool (topped up in place when artist-poor)
            current_track: The currently playing track
            profiles: Known artist profiles by id
            relationships: Related-artist edges keyed by artist id
            target_profiles: Resolved target per player (None if unresolved)
            gravities: Current gravity per player
            current_player_id: The active player
            round_number: Current round (1-based)
            og_drift: Similarity discount of the exploration phase
            stats: Request statistics
            deadline: Request deadline

        Returns:
            ScoringResult with metrics sorted by final score, best first
        """
        stats = stats or ApiStatisticsTracker()
        deadline = deadline or Deadline.unbounded()
        deadline.check_cancelled()
        profiles = dict(profiles)

        current_artist_id = primary_artist_id(current_track)
        current_profile = profiles.get(current_artist_id) if current_artist_id else None
        current_song_attraction = compute_attraction(
            current_profile,
            target_profiles.get(current_player_id),
            profiles,
            relationships,
            self.attraction_weights,
        )
        logger.info(f"Baseline attraction (current song to {current_player_id} target): {current_song_attraction:.3f}")

        self.ensure_artist_diversity(pool)
        seeds, fallback_fetches = self._resolve_missing(pool.seeds, profiles, stats, deadline)

        base = TrackMetadata.from_track(current_track, current_profile)
        gravity = gravities.get(current_player_id, self.gravity_config.baseline)
        own_target = target_profiles.get(current_player_id)

        metrics: List[CandidateTrackMetrics] = []
        zero_reasons = {"missingArtistProfile": 0, "nullTargetProfile": 0, "zeroSimilarity": 0}
        candidate_debug = []
        for seed in seeds:
            track = seed.track
            track_id = (track.get("id") or "").strip()
            track_name = (track.get("name") or "").strip()
            if not track_id or not track_name:
                logger.warning(f"Skipping candidate with missing track metadata: id={track_id!r} name={track_name!r}")
                continue

            artist_id = seed.artist_id
            profile = profiles.get(artist_id) if artist_id else None
            artist_name = profile.name if profile else seed.artist_name

            sim_score, components = compute_similarity(
                base,
                TrackMetadata.from_track(track, profile),
                profiles,
                relationships,
                self.similarity_weights,
            )
            attractions = {
                player_id: compute_attraction(profile, target, profiles, relationships, self.attraction_weights)
                for player_id, target in target_profiles.items()
            }
            is_target = any(is_target_of(t, artist_id, artist_name) for t in target_profiles.values())

            if profile is None:
                zero_reasons["missingArtistProfile"] += 1
            if any(t is None for t in target_profiles.values()):
                zero_reasons["nullTargetProfile"] += 1
            if profile is not None:
                zero_reasons["zeroSimilarity"] += sum(
                    1 for p, t in target_profiles.items() if t is not None and attractions[p] == 0
                )

            gravity_score = compute_gravity_score(
                gravity,
                attractions.get(current_player_id, 0.0),
                is_target_of(own_target, artist_id, artist_name),
                self.gravity_config,
            )
            stabilized, final_score = compute_final_score(sim_score, gravity_score, og_drift, round_number)

            metrics.append(CandidateTrackMetrics(
                track=track,
                source=seed.source,
                artist_id=artist_id,
                artist_name=artist_name,
                artist_genres=list(profile.genres) if profile else [],
                sim_score=sim_score,
                components=components,
                a_attraction=attractions.get("player1", 0.0),
                b_attraction=attractions.get("player2", 0.0),
                gravity_score=gravity_score,
                stabilized_score=stabilized,
                final_score=final_score,
                popularity_band=popularity_band(track.get("popularity")),
                current_song_attraction=current_song_attraction,
                is_target_artist=is_target,
            ))
            candidate_debug.append({
                "artistName": artist_name,
                "trackName": track_name,
                "source": seed.source.value,
                "simScore": round(sim_score, 4),
                "isTargetArtist": is_target,
            })
            logger.debug(
                f"Candidate {artist_name} | sim={sim_score:.3f} | A={attractions.get('player1', 0.0):.3f} "
                f"| B={attractions.get('player2', 0.0):.3f} | gravity={gravity_score:.3f} | final={final_score:.3f}"
            )

        metrics.sort(key=lambda m: m.final_score, reverse=True)
        debug = {
            "totalCandidates": len(metrics),
            "fallbackFetches": fallback_fetches,
            "p1NonZeroAttraction": sum(1 for m in metrics if m.a_attraction > 0),
            "p2NonZeroAttraction": sum(1 for m in metrics if m.b_attraction > 0),
            "zeroAttractionReasons": zero_reasons,
            "candidates": candidate_debug,
        }
        if metrics:
            finals = np.array([m.final_score for m in metrics])
            logger.info(
                f"Scoring summary: total={len(metrics)} | fallbackFetches={fallback_fetches} "
                f"| final min={finals.min():.3f} max={finals.max():.3f} avg={finals.mean():.3f}"
            )
        return ScoringResult(metrics, current_song_attraction, debug)


def _with_primary_artist_id(track: Dict, artist_id: str) -> Dict:
    artists = [dict(a) for a in track.get("artists") or [{}]]
    artists[0]["id"] = artist_id
    return {**track, "artists": artists}
