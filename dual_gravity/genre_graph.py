"""
Genre Similarity Graph
======================

Maps free-text genre strings onto a small set of parent clusters and scores
genre pairs by how they relate:

    exact match            1.0
    substring containment  0.9   ("alternative rock" vs "rock")
    same cluster           0.7   ("nu metal" vs "death metal")
    related clusters       edge weight from CLUSTER_EDGES
    otherwise              0.0

Set-to-set similarity is the average, over the candidate's genres, of each
genre's best match against the base genres. A candidate sharing one strong
genre with the base is not punished for carrying unrelated secondary genres,
which a Jaccard index would do.
"""

from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple

from .models import GenreMatch, GenreSimilarity

WEIGHT_EXACT = 1.0
WEIGHT_PARTIAL = 0.9
WEIGHT_CLUSTER = 0.7

UNKNOWN_GENRE = "unknown"
BOTH_UNKNOWN_SCORE = 0.5
ONE_UNKNOWN_SCORE = 0.2

# =============================================================================
# GENRE TAXONOMY
# =============================================================================

# Common genre names -> standard cluster
GENRE_MAPPINGS: Dict[str, str] = {
    "rock": "Rock",
    "pop": "Pop",
    "hip hop": "Hip-Hop",
    "hip-hop": "Hip-Hop",
    "r&b": "R&B",
    "rhythm and blues": "R&B",
    "country": "Country",
    "jazz": "Jazz",
    "blues": "Blues",
    "electronic": "Electronic",
    "dance": "Dance",
    "folk": "Folk",
    "indie": "Indie",
    "alternative": "Alternative",
    "metal": "Metal",
    "punk": "Punk",
    "reggae": "Reggae",
    "soul": "Soul",
    "funk": "Funk",
    "disco": "Disco",
    "classical": "Classical",
    "latin": "Latin",
    "world": "World",
    "gospel": "Gospel",
    "christian": "Christian",
    "new age": "New Age",
    "ambient": "Ambient",
    "techno": "Techno",
    "house": "House",
    "trance": "Trance",
    "dubstep": "Dubstep",
    "trap": "Hip-Hop",
    "edm": "Electronic",
}

# Sub-genre fragments -> parent cluster, checked by containment in this order
COMPOUND_GENRE_MAPPINGS: Dict[str, str] = {
    "bedroom pop": "Pop",
    "bedroom": "Pop",
    "arena rock": "Rock",
    "arena": "Rock",
    "pop rock": "Pop",
    "pop rap": "Hip-Hop",
    "pop punk": "Punk",
    "alternative rock": "Alternative",
    "indie rock": "Indie",
    "indie pop": "Pop",
    "electronic dance": "EDM",
    "deep house": "House",
    "tropical house": "House",
    "tropical": "House",
    "deep": "House",
    "contemporary r&b": "R&B",
    "contemporary": "R&B",
    "neo-psychedelia": "Alternative",
    "neo psychedelia": "Alternative",
    "psychedelia": "Alternative",
    "psychedelic": "Alternative",
    "indie": "Indie",
    "post-punk": "Punk",
    "post punk": "Punk",
    "new wave": "Alternative",
    "synth-pop": "Pop",
    "synth pop": "Pop",
    "art rock": "Rock",
    "progressive rock": "Rock",
    "prog rock": "Rock",
}

# Bidirectional edges between parent clusters
CLUSTER_EDGES: List[Tuple[str, str, float]] = [
    ("Metal", "Rock", 0.8),
    ("Punk", "Rock", 0.8),
    ("Alternative", "Rock", 0.7),
    ("Indie", "Alternative", 0.8),
    ("Blues", "Rock", 0.6),
    ("Hip-Hop", "R&B", 0.7),
    ("Pop", "R&B", 0.6),
    ("Pop", "Electronic", 0.5),
    ("Electronic", "Dance", 0.8),
    ("House", "Electronic", 0.9),
    ("Techno", "Electronic", 0.9),
    ("Trance", "Electronic", 0.9),
    ("Dubstep", "Electronic", 0.7),
    ("Indie", "Folk", 0.6),
    ("Country", "Folk", 0.7),
    ("Soul", "R&B", 0.8),
    ("Funk", "Soul", 0.8),
    ("Jazz", "Blues", 0.5),
    ("Reggae", "Hip-Hop", 0.4),
]


def _build_adjacency(edges: List[Tuple[str, str, float]]) -> Dict[str, Dict[str, float]]:
    adjacency: Dict[str, Dict[str, float]] = {}
    for a, b, weight in edges:
        adjacency.setdefault(a, {})[b] = weight
        adjacency.setdefault(b, {})[a] = weight
    return adjacency


CLUSTER_RELATIONSHIPS = _build_adjacency(CLUSTER_EDGES)

# Standard cluster names, first-seen order
STANDARD_GENRES: List[str] = list(dict.fromkeys(GENRE_MAPPINGS.values()))


# =============================================================================
# LOOKUPS
# =============================================================================

@lru_cache(maxsize=4096)
def get_genre_cluster(genre: str) -> Optional[str]:
    """
    Parent cluster for a genre string, or None when nothing matches.

    Lookup order: direct mapping, compound fragment, standard cluster name,
    standard cluster name contained in the genre ("roots reggae" -> Reggae).
    """
    normalized = genre.lower().strip()
    if not normalized:
        return None

    if normalized in GENRE_MAPPINGS:
        return GENRE_MAPPINGS[normalized]

    for fragment, cluster in COMPOUND_GENRE_MAPPINGS.items():
        if fragment in normalized:
            return cluster

    for standard in STANDARD_GENRES:
        if standard.lower() == normalized:
            return standard

    for standard in STANDARD_GENRES:
        if standard.lower() in normalized:
            return standard

    return None


def genre_pair_similarity(genre_a: str, genre_b: str) -> GenreMatch:
    """
    Score two single genres. Symmetric in its arguments.

    Returns:
        GenreMatch with candidate_genre=genre_b and best_match_genre=genre_a
    """
    if not genre_a or not genre_b:
        return GenreMatch(genre_b, genre_a, 0.0, "unrelated")

    norm_a = genre_a.lower().strip()
    norm_b = genre_b.lower().strip()

    if norm_a == norm_b:
        return GenreMatch(genre_b, genre_a, WEIGHT_EXACT, "exact")

    if norm_a in norm_b or norm_b in norm_a:
        return GenreMatch(genre_b, genre_a, WEIGHT_PARTIAL, "partial")

    cluster_a = get_genre_cluster(norm_a)
    cluster_b = get_genre_cluster(norm_b)

    if not cluster_a or not cluster_b:
        return GenreMatch(genre_b, genre_a, 0.0, "unrelated", cluster_a, cluster_b)

    if cluster_a == cluster_b:
        return GenreMatch(genre_b, genre_a, WEIGHT_CLUSTER, "cluster", cluster_a, cluster_b)

    weight = CLUSTER_RELATIONSHIPS.get(cluster_a, {}).get(cluster_b)
    if weight is not None:
        return GenreMatch(genre_b, genre_a, weight, "related", cluster_a, cluster_b)

    return GenreMatch(genre_b, genre_a, 0.0, "unrelated", cluster_a, cluster_b)


def genre_similarity(genre_a: str, genre_b: str) -> float:
    return genre_pair_similarity(genre_a, genre_b).score


def avg_max_genre_similarity(
    base_genres: Sequence[str],
    candidate_genres: Sequence[str],
) -> GenreSimilarity:
    """
    Average over candidate genres of each one's best match in base genres.

    Artists tagged "unknown" are special-cased: both unknown scores 0.5,
    exactly one unknown scores 0.2.

    Args:
        base_genres: Genres of the reference artist
        candidate_genres: Genres of the artist being compared

    Returns:
        GenreSimilarity with score in [0, 1] and the non-zero per-genre
        matches sorted best first
    """
    base_genres = list(base_genres or [])
    candidate_genres = list(candidate_genres or [])
    base_unknown = UNKNOWN_GENRE in base_genres
    candidate_unknown = UNKNOWN_GENRE in candidate_genres

    if base_unknown and candidate_unknown:
        return GenreSimilarity(
            BOTH_UNKNOWN_SCORE,
            [GenreMatch(UNKNOWN_GENRE, UNKNOWN_GENRE, BOTH_UNKNOWN_SCORE, "cluster")],
        )

    if base_unknown or candidate_unknown:
        candidate_label = UNKNOWN_GENRE if candidate_unknown else (candidate_genres[:1] or [""])[0]
        base_label = UNKNOWN_GENRE if base_unknown else (base_genres[:1] or [""])[0]
        return GenreSimilarity(
            ONE_UNKNOWN_SCORE,
            [GenreMatch(candidate_label, base_label, ONE_UNKNOWN_SCORE, "unrelated")],
        )

    if not base_genres or not candidate_genres:
        return GenreSimilarity(0.0)

    total = 0.0
    details: List[GenreMatch] = []

    for candidate in candidate_genres:
        best: Optional[GenreMatch] = None
        for base in base_genres:
            match = genre_pair_similarity(base, candidate)
            if best is None or match.score > best.score:
                best = match
            if best.score == WEIGHT_EXACT:
                break
        if best is not None and best.score > 0:
            details.append(best)
            total += best.score

    details.sort(key=lambda m: m.score, reverse=True)
    return GenreSimilarity(total / len(candidate_genres), details)
