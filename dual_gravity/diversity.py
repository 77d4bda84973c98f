"""
Diversity Selector
==================

Turns the scored pool into the options shown to the active player:
3 closer + 3 neutral + 3 further, no artist twice.

A candidate's category comes from how its attraction to the active player's
target compares with the currently playing song's attraction:

    diff = attraction(candidate) - attraction(current song)
    closer:  diff >  tolerance
    further: diff < -tolerance
    neutral: otherwise

Precedence, applied in this order and no other:

1. Early-round target filter (skipped under hard convergence)
2. Artist dedupe, best final score first (artist id and normalized name)
3. Tolerance bucketing (tolerance narrows when the diff range is small)
4. Percentile split of the diff-ranked list when a bucket is short and at
   least 9 distinct artists exist (top third / middle / bottom third)
5. Guaranteed minimum per category, best final score first
6. Weighted random fill across categories, capped per category
7. Best-score fill regardless of category (degraded, logged, never raised)
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from .config import (
    CATEGORIES,
    DEFAULT_GRAVITY_CONFIG,
    DEFAULT_SELECTOR_CONFIG,
    GravityConfig,
    SelectorConfig,
)
from .models import CandidateTrackMetrics, PlayerGravityMap, TargetProfile
from .scoring import is_target_of
from .utils import normalize_name

logger = logging.getLogger(__name__)


@dataclass
class SelectionResult:
    """Selected options plus what the selector filtered and why."""
    selected: List[CandidateTrackMetrics]
    filtered_artist_names: Set[str] = field(default_factory=set)
    degraded: bool = False
    debug: Dict = field(default_factory=dict)

    def category_counts(self) -> Dict[str, int]:
        counts = {c: 0 for c in CATEGORIES}
        for metric in self.selected:
            counts[metric.selection_category] += 1
        return counts


def artist_keys(metric: CandidateTrackMetrics) -> Set[str]:
    """Every id and normalized name credited on the candidate's track."""
    keys = set()
    if metric.artist_id:
        keys.add(f"id:{metric.artist_id}")
    if metric.artist_name:
        keys.add(f"name:{normalize_name(metric.artist_name)}")
    for artist in metric.track.get("artists") or []:
        if artist.get("id"):
            keys.add(f"id:{artist['id']}")
        if artist.get("name"):
            keys.add(f"name:{normalize_name(artist['name'])}")
    return keys


def dedupe_by_artist(metrics: List[CandidateTrackMetrics]) -> List[CandidateTrackMetrics]:
    """Keep each artist's best candidate by final score."""
    ranked = sorted(metrics, key=lambda m: (-m.final_score, m.track.get("id") or ""))
    seen: Set[str] = set()
    unique = []
    for metric in ranked:
        keys = artist_keys(metric)
        if keys & seen:
            continue
        seen |= keys
        unique.append(metric)
    return unique


class DiversitySelector:
    """Balanced closer/neutral/further option selection."""

    def __init__(
        self,
        config: SelectorConfig = DEFAULT_SELECTOR_CONFIG,
        gravity_config: GravityConfig = DEFAULT_GRAVITY_CONFIG,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config
        self.gravity_config = gravity_config
        self.rng = rng if rng is not None else np.random.default_rng()

    # =========================================================================
    # FILTERS
    # =========================================================================

    def filter_early_targets(
        self,
        metrics: List[CandidateTrackMetrics],
        round_number: int,
        target_profiles: Dict[str, Optional[TargetProfile]],
        gravities: PlayerGravityMap,
    ) -> Tuple[List[CandidateTrackMetrics], Set[str]]:
        """
        Drop target artists that are not yet earned.

        A target artist stays when its similarity to the current song is
        above the threshold, the round reached the override round, or the
        owning player's gravity is at its maximum.
        """
        kept = []
        filtered: Set[str] = set()
        for metric in metrics:
            owners = [
                player_id for player_id, target in target_profiles.items()
                if is_target_of(target, metric.artist_id, metric.artist_name)
            ]
            if not owners:
                kept.append(metric)
                continue
            allowed = (
                metric.sim_score > self.config.target_similarity_threshold
                or round_number >= self.config.target_override_round
                or any(gravities.get(p, 0.0) >= self.gravity_config.max_gravity for p in owners)
            )
            if allowed:
                kept.append(metric)
            else:
                filtered.add(metric.artist_name or "Unknown")
                logger.info(
                    f"Filtered target artist {metric.artist_name} "
                    f"(sim={metric.sim_score:.3f} <= {self.config.target_similarity_threshold})"
                )
        return kept, filtered

    # =========================================================================
    # BUCKETING
    # =========================================================================

    def tolerance_for(self, diffs: List[float]) -> float:
        if not diffs:
            return self.config.neutral_tolerance
        diff_range = max(diffs) - min(diffs)
        if diff_range < self.config.narrow_range:
            return max(self.config.min_tolerance, diff_range * self.config.narrow_range_share)
        return self.config.neutral_tolerance

    def bucket(
        self,
        unique: List[CandidateTrackMetrics],
        current_player_id: str,
    ) -> Tuple[Dict[str, List[CandidateTrackMetrics]], Dict]:
        """
        Split candidates into categories.

        Returns:
            (category -> candidates best final score first, bucketing debug)
        """
        diffs = {
            id(m): m.attraction_for(current_player_id) - m.current_song_attraction
            for m in unique
        }
        tolerance = self.tolerance_for(list(diffs.values()))
        buckets: Dict[str, List[CandidateTrackMetrics]] = {c: [] for c in CATEGORIES}
        for metric in unique:
            diff = diffs[id(metric)]
            if diff > tolerance:
                buckets["closer"].append(metric)
            elif diff < -tolerance:
                buckets["further"].append(metric)
            else:
                buckets["neutral"].append(metric)

        strategy = "tolerance"
        short = any(len(b) < self.config.per_category for b in buckets.values())
        if short and len(unique) >= self.config.display_option_count:
            logger.info(
                "Short category after tolerance bucketing "
                f"({', '.join(f'{c}={len(b)}' for c, b in buckets.items())}), using percentile split"
            )
            buckets = self._percentile_split(unique, diffs)
            strategy = "percentile"

        debug = {
            "tolerance": round(tolerance, 4),
            "diffRange": round(max(diffs.values()) - min(diffs.values()), 4) if diffs else 0.0,
            "bucketStrategy": strategy,
            "bucketSizes": {c: len(b) for c, b in buckets.items()},
        }
        return buckets, debug

    @staticmethod
    def _percentile_split(
        unique: List[CandidateTrackMetrics],
        diffs: Dict[int, float],
    ) -> Dict[str, List[CandidateTrackMetrics]]:
        by_diff = sorted(unique, key=lambda m: (-diffs[id(m)], -m.final_score))
        third = len(by_diff) // 3
        buckets = {
            "closer": by_diff[:third],
            "neutral": by_diff[third:len(by_diff) - third],
            "further": by_diff[len(by_diff) - third:],
        }
        for category in buckets:
            buckets[category].sort(key=lambda m: -m.final_score)
        return buckets

    # =========================================================================
    # SELECTION
    # =========================================================================

    def select(
        self,
        metrics: List[CandidateTrackMetrics],
        round_number: int,
        target_profiles: Dict[str, Optional[TargetProfile]],
        gravities: PlayerGravityMap,
        current_player_id: str,
        hard_convergence: bool = False,
    ) -> SelectionResult:
        """
        Pick the balanced option set.

        Args:
            metrics: Scored candidates
            round_number: Current round
            target_profiles: Resolved target per player
            gravities: Gravity per player
            current_player_id: The active player
            hard_convergence: Late-game flag; disables the target filter

        Returns:
            SelectionResult; selected metrics are copies annotated with
            selection_category, grouped closer, neutral, further
        """
        filtered_names: Set[str] = set()
        if not hard_convergence:
            metrics, filtered_names = self.filter_early_targets(
                metrics, round_number, target_profiles, gravities
            )

        unique = dedupe_by_artist(metrics)
        buckets, debug = self.bucket(unique, current_player_id)
        per_category = self.config.per_category
        display_count = self.config.display_option_count

        chosen: Dict[str, List[CandidateTrackMetrics]] = {c: [] for c in CATEGORIES}
        cursors = {c: 0 for c in CATEGORIES}

        def take(category: str) -> None:
            chosen[category].append(buckets[category][cursors[category]])
            cursors[category] += 1

        # Phase 1: guaranteed minimums
        for category in CATEGORIES:
            minimum = min(self.config.guaranteed_minimums.get(category, 0), per_category)
            while len(chosen[category]) < minimum and cursors[category] < len(buckets[category]):
                take(category)

        # Phase 2: weighted fill
        while sum(len(c) for c in chosen.values()) < display_count:
            open_categories = [
                c for c in CATEGORIES
                if len(chosen[c]) < per_category and cursors[c] < len(buckets[c])
            ]
            if not open_categories:
                break
            weights = np.array([self.config.category_weights.get(c, 0.0) for c in open_categories])
            if weights.sum() <= 0:
                weights = np.ones(len(open_categories))
            take(open_categories[int(self.rng.choice(len(open_categories), p=weights / weights.sum()))])

        selected = [
            replace(metric, selection_category=category)
            for category in CATEGORIES
            for metric in chosen[category]
        ]

        # Last resort: best score, no duplicate artist, any category
        degraded = False
        if len(selected) < display_count:
            category_of = {id(m): c for c, ms in buckets.items() for m in ms}
            taken = {id(m) for ms in chosen.values() for m in ms}
            for metric in unique:
                if len(selected) >= display_count:
                    break
                if id(metric) in taken:
                    continue
                selected.append(replace(metric, selection_category=category_of.get(id(metric), "neutral")))

        result = SelectionResult(selected=selected, filtered_artist_names=filtered_names, debug=debug)
        counts = result.category_counts()
        if len(selected) < display_count or any(n != per_category for n in counts.values()):
            degraded = True
            logger.warning(
                f"Could not achieve perfect balance: {counts} from {len(unique)} distinct artists "
                f"(need {display_count})"
            )
        result.degraded = degraded
        result.debug.update({
            "uniqueArtists": len(unique),
            "filteredTargetArtists": sorted(filtered_names),
            "categoryCounts": counts,
            "degraded": degraded,
        })
        logger.info(f"Selected {len(selected)} options: {counts}")
        return result
