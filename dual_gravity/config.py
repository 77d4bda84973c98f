"""
Configuration and constants for the Dual Gravity selection engine.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


# =============================================================================
# SPOTIFY API CONFIGURATION
# =============================================================================
SPOTIFY_CLIENT_ID = os.environ.get("SPOTIFY_CLIENT_ID", "")
SPOTIFY_CLIENT_SECRET = os.environ.get("SPOTIFY_CLIENT_SECRET", "")
SPOTIFY_MARKET = os.environ.get("SPOTIFY_MARKET", "US")

# Minimum spacing between catalog requests
MIN_REQUEST_INTERVAL = 0.05

# =============================================================================
# GAME RULES
# =============================================================================
PLAYER_IDS: Tuple[str, str] = ("player1", "player2")

MAX_ROUND_TURNS = 10
DISPLAY_OPTION_COUNT = 9
TRACKS_PER_CATEGORY = 3

# Baseline added to every stabilized similarity score
OG_CONSTANT = 0.12

# Rounds at or past this value let target artists through unconditionally
TARGET_OVERRIDE_ROUND = 8


@dataclass(frozen=True)
class ExplorationPhase:
    """How strongly similarity to the current song is discounted in a round range."""
    level: str
    og_drift: float
    first_round: int
    last_round: int

    def to_dict(self) -> Dict:
        return {
            "level": self.level,
            "ogDrift": self.og_drift,
            "rounds": [self.first_round, self.last_round],
        }


EXPLORATION_PHASES: List[ExplorationPhase] = [
    ExplorationPhase("high", 0.2, 1, 2),      # light exploration
    ExplorationPhase("medium", 0.5, 3, 5),    # balance
    ExplorationPhase("low", 0.8, 6, 10),      # strong convergence
]

# =============================================================================
# GRAVITY
# =============================================================================
@dataclass
class GravityConfig:
    """Limits and transition deltas for per-player gravity."""
    min_gravity: float = 0.15
    max_gravity: float = 0.85
    baseline: float = 0.32

    closer_delta: float = 0.10
    neutral_delta: float = 0.02
    further_delta: float = -0.05

    # Underdog rule: leader above trigger_high, opponent below trigger_low
    underdog_trigger_high: float = 0.5
    underdog_trigger_low: float = 0.25
    underdog_bonus: float = 0.05

    # Target boost inside the gravity score
    boost_threshold: float = 0.35
    boost_factor: float = 2.0

    # Influence zones (active player's gravity)
    desperation_below: float = 0.2
    dead_zone_below: float = 0.4
    convergence_at: float = 0.8

    def delta_for(self, category: str) -> float:
        return {
            "closer": self.closer_delta,
            "neutral": self.neutral_delta,
            "further": self.further_delta,
        }[category]


DEFAULT_GRAVITY_CONFIG = GravityConfig()

# =============================================================================
# SCORING WEIGHTS
# =============================================================================
@dataclass
class SimilarityWeights:
    """Weights for current-track to candidate-track similarity."""
    genre: float = 0.50
    relationship: float = 0.10
    track_popularity: float = 0.075
    artist_popularity: float = 0.075
    era: float = 0.20
    followers: float = 0.05

    def to_dict(self) -> Dict[str, float]:
        return {
            "genre": self.genre,
            "relationship": self.relationship,
            "track_popularity": self.track_popularity,
            "artist_popularity": self.artist_popularity,
            "era": self.era,
            "followers": self.followers,
        }


@dataclass
class AttractionWeights:
    """Weights for candidate artist to target artist attraction (artist-level only)."""
    genre: float = 0.40
    relationship: float = 0.30
    artist_popularity: float = 0.15
    followers: float = 0.15

    def to_dict(self) -> Dict[str, float]:
        return {
            "genre": self.genre,
            "relationship": self.relationship,
            "artist_popularity": self.artist_popularity,
            "followers": self.followers,
        }


DEFAULT_SIMILARITY_WEIGHTS = SimilarityWeights()
DEFAULT_ATTRACTION_WEIGHTS = AttractionWeights()

# =============================================================================
# CANDIDATE GENERATION CONFIGURATION
# =============================================================================
@dataclass
class CandidateConfig:
    """Configuration for candidate pool building."""
    # Pool-size guarantees
    min_candidate_pool: int = field(
        default_factory=lambda: _env_int("DGS_MIN_CANDIDATE_POOL", 50)
    )
    min_unique_artists: int = field(
        default_factory=lambda: _env_int("DGS_MIN_UNIQUE_ARTISTS", 20)
    )

    # One random pick out of this many top tracks per artist
    top_tracks_per_artist: int = 10

    # Artist ids handled per stage-2 request
    chunk_size: int = 5

    # Artists missing from the store fetched from the API per chunk
    max_missing_per_chunk: int = 5

    # Catalog name searches for seeds lacking a valid artist id
    max_name_searches: int = 5

    # Parallel workers for chunk fan-out
    max_workers: int = 4

    # Stop starting related-artist chunks after this share of the deadline
    related_budget_fraction: float = 0.35

    # Genre search fallback
    genre_search_limit: int = 20
    genre_search_max_genres: int = 3

    # Scorer blocks on a store fetch below this many distinct artists
    min_scoring_artists: int = 20

    # Hard wall-clock budget per request
    deadline_seconds: float = field(
        default_factory=lambda: _env_float("DGS_DEADLINE_SECONDS", 9.0)
    )

    # Strategies other than the store tiers are skipped inside this reserve
    deadline_reserve_seconds: float = 1.5

    # Target insertion
    target_insertion_gravity: float = 0.8
    target_insertion_round: int = TARGET_OVERRIDE_ROUND


DEFAULT_CANDIDATE_CONFIG = CandidateConfig()

# =============================================================================
# DIVERSITY SELECTION
# =============================================================================
CATEGORIES: Tuple[str, str, str] = ("closer", "neutral", "further")


@dataclass
class SelectorConfig:
    """Configuration for the closer/neutral/further option selector."""
    display_option_count: int = DISPLAY_OPTION_COUNT
    per_category: int = TRACKS_PER_CATEGORY

    category_weights: Dict[str, float] = field(default_factory=lambda: {
        "closer": 0.34,
        "neutral": 0.33,
        "further": 0.33,
    })
    guaranteed_minimums: Dict[str, int] = field(default_factory=lambda: {
        "closer": 3,
        "neutral": 3,
        "further": 3,
    })

    neutral_tolerance: float = 0.02
    # Below this diff range the tolerance shrinks to a share of the range
    narrow_range: float = 0.1
    narrow_range_share: float = 0.2
    min_tolerance: float = 0.015

    # Early-round target filter
    target_similarity_threshold: float = 0.4
    target_override_round: int = TARGET_OVERRIDE_ROUND


DEFAULT_SELECTOR_CONFIG = SelectorConfig()

# =============================================================================
# CACHING CONFIGURATION
# =============================================================================
@dataclass
class CacheConfig:
    """Process-local cache and background queue sizing."""
    ttl_seconds: float = field(
        default_factory=lambda: _env_float("DGS_CACHE_TTL_SECONDS", 300.0)
    )
    max_entries: int = 5000
    backfill_queue_size: int = 256
    # Store rows older than this are refetched from the catalog
    store_ttl_days: float = field(
        default_factory=lambda: _env_float("DGS_STORE_TTL_DAYS", 100.0)
    )


DEFAULT_CACHE_CONFIG = CacheConfig()

CACHE_DIR = os.path.join(
    os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache"),
    "dual_gravity",
)
STORE_PATH = os.environ.get("DGS_STORE_PATH", os.path.join(CACHE_DIR, "catalog.sqlite3"))

# =============================================================================
# POPULARITY BANDS
# =============================================================================
POPULARITY_BAND_LOW_BELOW = 34
POPULARITY_BAND_MID_BELOW = 67
DEFAULT_TRACK_POPULARITY = 50
