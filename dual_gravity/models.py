"""
Data model shared by the engine stages.

Tracks stay in the catalog's own JSON shape (plain dicts with id, name,
popularity, is_playable, album.release_date and artists[]); everything the
engine derives from them is a dataclass here.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple

PlayerGravityMap = Dict[str, float]


# =============================================================================
# TRACK HELPERS
# =============================================================================

def primary_artist(track: Dict) -> Dict:
    """First credited artist of a track, or an empty dict."""
    artists = track.get("artists") or []
    return artists[0] if artists else {}


def primary_artist_id(track: Dict) -> Optional[str]:
    return primary_artist(track).get("id") or None


def primary_artist_name(track: Dict) -> Optional[str]:
    return primary_artist(track).get("name") or None


def release_date(track: Dict) -> Optional[str]:
    album = track.get("album") or {}
    return album.get("release_date") or track.get("release_date")


def is_playable(track: Dict) -> bool:
    # Catalog responses omit is_playable unless a market is given
    return track.get("is_playable", True) is not False


# =============================================================================
# ARTISTS AND TARGETS
# =============================================================================

@dataclass(frozen=True)
class ArtistProfile:
    """Immutable snapshot of an artist's catalog metadata."""
    id: str
    name: str
    genres: Tuple[str, ...] = ()
    popularity: Optional[int] = None
    followers: Optional[int] = None

    @property
    def needs_backfill(self) -> bool:
        if "unknown" in self.genres:
            return False
        return not self.genres or self.popularity is None or self.followers is None

    @classmethod
    def from_spotify(cls, artist: Dict) -> "ArtistProfile":
        followers = artist.get("followers")
        if isinstance(followers, dict):
            followers = followers.get("total")
        return cls(
            id=artist["id"],
            name=artist.get("name", ""),
            genres=tuple(artist.get("genres") or ()),
            popularity=artist.get("popularity"),
            followers=followers,
        )

    @classmethod
    def from_dict(cls, data: Dict) -> "ArtistProfile":
        return cls.from_spotify(data)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "genres": list(self.genres),
            "popularity": self.popularity,
            "followers": self.followers,
        }


@dataclass
class TargetArtist:
    """A player's chosen target as entered: a name and maybe a catalog id."""
    name: str
    id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {"name": self.name, "id": self.id}


@dataclass
class TargetProfile:
    """A target artist with its resolved catalog profile."""
    artist: TargetArtist
    spotify_id: Optional[str]
    genres: List[str] = field(default_factory=list)
    popularity: Optional[int] = None
    followers: Optional[int] = None

    def as_artist_profile(self) -> ArtistProfile:
        return ArtistProfile(
            id=self.spotify_id or self.artist.id or "unknown",
            name=self.artist.name,
            genres=tuple(self.genres),
            popularity=self.popularity if self.popularity is not None else 0,
            followers=self.followers,
        )

    @classmethod
    def from_profile(cls, artist: TargetArtist, profile: ArtistProfile) -> "TargetProfile":
        return cls(
            artist=TargetArtist(name=artist.name, id=profile.id),
            spotify_id=profile.id,
            genres=list(profile.genres),
            popularity=profile.popularity,
            followers=profile.followers,
        )

    @classmethod
    def from_dict(cls, data: Dict) -> "TargetProfile":
        artist = data.get("artist") or {}
        return cls(
            artist=TargetArtist(name=artist.get("name", ""), id=artist.get("id")),
            spotify_id=data.get("spotifyId"),
            genres=list(data.get("genres") or []),
            popularity=data.get("popularity"),
            followers=data.get("followers"),
        )

    def to_dict(self) -> Dict:
        return {
            "artist": self.artist.to_dict(),
            "spotifyId": self.spotify_id,
            "genres": list(self.genres),
            "popularity": self.popularity,
            "followers": self.followers,
        }


# =============================================================================
# CANDIDATES
# =============================================================================

class CandidateSource(str, Enum):
    """Where a candidate came from; lower priority value wins on collision."""
    TARGET_INSERTION = "target_insertion"
    EMBEDDING_FALLBACK = "embedding"
    RECOMMENDATIONS = "recommendations"
    RELATED_TOP_TRACKS = "related_top_tracks"
    TARGET_BOOST = "target_boost"
    RELATED_ARTIST_INSERTION = "related_artist_insertion"

    @property
    def priority(self) -> int:
        return _SOURCE_PRIORITY.get(self, 3)


_SOURCE_PRIORITY = {
    CandidateSource.TARGET_INSERTION: 0,
    CandidateSource.EMBEDDING_FALLBACK: 1,
    CandidateSource.RECOMMENDATIONS: 2,
}


@dataclass
class CandidateSeed:
    """A playable track proposed for the current selection."""
    track: Dict
    source: CandidateSource

    @property
    def track_id(self) -> Optional[str]:
        return self.track.get("id")

    @property
    def artist_id(self) -> Optional[str]:
        return primary_artist_id(self.track)

    @property
    def artist_name(self) -> Optional[str]:
        return primary_artist_name(self.track)

    @classmethod
    def from_dict(cls, data: Dict) -> "CandidateSeed":
        return cls(track=data["track"], source=CandidateSource(data["source"]))

    def to_dict(self) -> Dict:
        return {"track": self.track, "source": self.source.value}


# =============================================================================
# SCORING
# =============================================================================

@dataclass
class GenreMatch:
    """How one candidate genre matched the base genres."""
    candidate_genre: str
    best_match_genre: Optional[str]
    score: float
    match_type: str  # exact | partial | cluster | related | unrelated
    cluster_a: Optional[str] = None
    cluster_b: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "candidateGenre": self.candidate_genre,
            "bestMatchGenre": self.best_match_genre,
            "score": round(self.score, 4),
            "matchType": self.match_type,
            "clusterA": self.cluster_a,
            "clusterB": self.cluster_b,
        }


@dataclass
class GenreSimilarity:
    """Set-to-set genre similarity with per-genre explanations, best first."""
    score: float
    details: List[GenreMatch] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "score": round(self.score, 4),
            "details": [d.to_dict() for d in self.details],
        }


@dataclass
class ScoringComponents:
    """Per-factor breakdown of a similarity or attraction score."""
    genre: GenreSimilarity = field(default_factory=lambda: GenreSimilarity(0.0))
    relationship: float = 0.0
    track_pop: float = 0.0
    artist_pop: float = 0.0
    era: float = 0.0
    followers: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "genre": self.genre.to_dict(),
            "relationship": self.relationship,
            "trackPop": self.track_pop,
            "artistPop": self.artist_pop,
            "era": self.era,
            "followers": self.followers,
        }


@dataclass
class CandidateTrackMetrics:
    """A scored candidate, annotated with its category by the selector."""
    track: Dict
    source: CandidateSource
    artist_id: Optional[str]
    artist_name: Optional[str]
    artist_genres: List[str]
    sim_score: float
    components: ScoringComponents
    a_attraction: float
    b_attraction: float
    gravity_score: float
    stabilized_score: float
    final_score: float
    popularity_band: str
    current_song_attraction: float
    is_target_artist: bool = False
    selection_category: Optional[str] = None

    def attraction_for(self, player_id: str) -> float:
        return self.a_attraction if player_id == "player1" else self.b_attraction

    def to_dict(self) -> Dict:
        return {
            "source": self.source.value,
            "artistId": self.artist_id,
            "artistName": self.artist_name,
            "artistGenres": list(self.artist_genres),
            "simScore": self.sim_score,
            "scoreComponents": self.components.to_dict(),
            "aAttraction": self.a_attraction,
            "bAttraction": self.b_attraction,
            "gravityScore": self.gravity_score,
            "stabilizedScore": self.stabilized_score,
            "finalScore": self.final_score,
            "popularityBand": self.popularity_band,
            "currentSongAttraction": self.current_song_attraction,
            "isTargetArtist": self.is_target_artist,
            "selectionCategory": self.selection_category,
        }


@dataclass
class LastSelection:
    """The option a player picked last turn."""
    player_id: str
    track_id: str
    selection_category: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["LastSelection"]:
        if not data:
            return None
        return cls(
            player_id=data["playerId"],
            track_id=data.get("trackId", ""),
            selection_category=data.get("selectionCategory"),
        )


@dataclass
class OptionTrack:
    """One option shown to the active player."""
    track: Dict
    artist: Dict
    final_score: float
    metrics: CandidateTrackMetrics

    @classmethod
    def from_metrics(cls, metric: CandidateTrackMetrics) -> "OptionTrack":
        artist = primary_artist(metric.track) or {
            "id": metric.artist_id or metric.track.get("id"),
            "name": metric.artist_name or metric.track.get("name"),
        }
        return cls(
            track=metric.track,
            artist=artist,
            final_score=metric.final_score,
            metrics=metric,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "track": self.track,
            "artist": self.artist,
            "finalScore": self.final_score,
            "metrics": self.metrics.to_dict(),
        }
