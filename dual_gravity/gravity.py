"""
Gravity state machine.

Each player carries a gravity scalar in [min_gravity, max_gravity]. It moves
only through two transitions:

- the selection delta applied after a player's pick (closer/neutral/further)
- the underdog boost for a player far behind a leader

Round number and gravity together decide the exploration phase and the
influence zone the candidate stages use.
"""

import logging
import math
from typing import Dict, Optional

from .config import (
    DEFAULT_GRAVITY_CONFIG,
    EXPLORATION_PHASES,
    ExplorationPhase,
    GravityConfig,
    MAX_ROUND_TURNS,
    PLAYER_IDS,
)
from .models import LastSelection, PlayerGravityMap

logger = logging.getLogger(__name__)

DESPERATION = "desperation"
DEAD_ZONE = "dead_zone"
INFLUENCE = "influence"
CONVERGENCE = "convergence"


def clamp_gravity(value: Optional[float], config: GravityConfig = DEFAULT_GRAVITY_CONFIG) -> float:
    """Clamp into the configured limits; missing or NaN becomes the baseline."""
    if value is None:
        return config.baseline
    value = float(value)
    if math.isnan(value):
        return config.baseline
    return min(config.max_gravity, max(config.min_gravity, value))


def normalize_gravities(
    gravities: Optional[Dict[str, float]],
    config: GravityConfig = DEFAULT_GRAVITY_CONFIG,
) -> PlayerGravityMap:
    """A valid gravity for every player, whatever came in."""
    gravities = gravities or {}
    return {player_id: clamp_gravity(gravities.get(player_id), config) for player_id in PLAYER_IDS}


def opponent_of(player_id: str) -> str:
    return PLAYER_IDS[1] if player_id == PLAYER_IDS[0] else PLAYER_IDS[0]


def apply_gravity_updates(
    gravities: Optional[Dict[str, float]],
    last_selection: Optional[LastSelection],
    config: GravityConfig = DEFAULT_GRAVITY_CONFIG,
) -> PlayerGravityMap:
    """
    Apply the last pick's delta and the underdog rule.

    Args:
        gravities: Gravity per player before the update
        last_selection: The pick that ended the previous turn, if any
        config: Limits, deltas and underdog thresholds

    Returns:
        A new, normalized gravity map
    """
    updated = normalize_gravities(gravities, config)
    if last_selection is None or not last_selection.track_id:
        return updated

    player_id = last_selection.player_id
    if player_id not in updated:
        logger.warning(f"Ignoring selection from unknown player '{player_id}'")
        return updated

    category = last_selection.selection_category or "neutral"
    delta = config.delta_for(category)
    updated[player_id] = clamp_gravity(updated[player_id] + delta, config)
    logger.info(f"Gravity {category} choice: {player_id} {delta:+.3f} -> {updated[player_id]:.3f}")

    for leader in PLAYER_IDS:
        trailer = opponent_of(leader)
        if updated[leader] > config.underdog_trigger_high and updated[trailer] < config.underdog_trigger_low:
            updated[trailer] = clamp_gravity(updated[trailer] + config.underdog_bonus, config)
            logger.info(f"Underdog boost: {trailer} +{config.underdog_bonus:.2f} -> {updated[trailer]:.3f}")
            break

    return normalize_gravities(updated, config)


def get_exploration_phase(round_number: int) -> ExplorationPhase:
    """Phase for a round; rounds past the table stay in the last phase."""
    for phase in EXPLORATION_PHASES:
        if phase.first_round <= round_number <= phase.last_round:
            return phase
    if round_number < EXPLORATION_PHASES[0].first_round:
        return EXPLORATION_PHASES[0]
    return EXPLORATION_PHASES[-1]


def hard_convergence_active(round_number: int) -> bool:
    return round_number >= MAX_ROUND_TURNS


def influence_zone(gravity: float, config: GravityConfig = DEFAULT_GRAVITY_CONFIG) -> str:
    if gravity < config.desperation_below:
        return DESPERATION
    if gravity < config.dead_zone_below:
        return DEAD_ZONE
    if gravity < config.convergence_at:
        return INFLUENCE
    return CONVERGENCE
