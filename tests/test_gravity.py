import math
import random

import pytest

from dual_gravity.config import DEFAULT_GRAVITY_CONFIG
from dual_gravity.gravity import (
    CONVERGENCE,
    DEAD_ZONE,
    DESPERATION,
    INFLUENCE,
    apply_gravity_updates,
    clamp_gravity,
    get_exploration_phase,
    hard_convergence_active,
    influence_zone,
    normalize_gravities,
    opponent_of,
)
from dual_gravity.models import LastSelection


def pick(player_id, category):
    return LastSelection(player_id=player_id, track_id="t", selection_category=category)


def test_clamp_gravity():
    assert clamp_gravity(0.0) == 0.15
    assert clamp_gravity(2.0) == 0.85
    assert clamp_gravity(None) == 0.32
    assert clamp_gravity(math.nan) == 0.32
    assert clamp_gravity(0.5) == 0.5


def test_normalize_fills_both_players():
    assert normalize_gravities({"player1": 0.9}) == {"player1": 0.85, "player2": 0.32}
    assert normalize_gravities(None) == {"player1": 0.32, "player2": 0.32}


def test_opponent_of():
    assert opponent_of("player1") == "player2"
    assert opponent_of("player2") == "player1"


@pytest.mark.parametrize("category,expected", [
    ("closer", 0.42),
    ("neutral", 0.34),
    ("further", 0.27),
])
def test_selection_deltas(category, expected):
    updated = apply_gravity_updates({"player1": 0.32, "player2": 0.32}, pick("player1", category))
    assert updated["player1"] == pytest.approx(expected)
    assert updated["player2"] == pytest.approx(0.32)


def test_no_selection_only_normalizes():
    assert apply_gravity_updates({"player1": 0.5}, None) == {"player1": 0.5, "player2": 0.32}


def test_unknown_player_selection_is_ignored():
    gravities = {"player1": 0.4, "player2": 0.4}
    assert apply_gravity_updates(gravities, pick("player3", "closer")) == gravities


def test_underdog_boost():
    updated = apply_gravity_updates({"player1": 0.45, "player2": 0.2}, pick("player1", "closer"))
    assert updated["player1"] == pytest.approx(0.55)
    assert updated["player2"] == pytest.approx(0.25)


def test_underdog_boost_for_either_player():
    updated = apply_gravity_updates({"player1": 0.2, "player2": 0.6}, pick("player2", "neutral"))
    assert updated["player1"] == pytest.approx(0.25)


def test_no_underdog_boost_when_close():
    updated = apply_gravity_updates({"player1": 0.45, "player2": 0.3}, pick("player1", "closer"))
    assert updated["player2"] == pytest.approx(0.3)


def test_input_is_not_mutated():
    gravities = {"player1": 0.32, "player2": 0.32}
    apply_gravity_updates(gravities, pick("player1", "closer"))
    assert gravities == {"player1": 0.32, "player2": 0.32}


def test_gravity_stays_in_bounds_over_random_games():
    rng = random.Random(7)
    config = DEFAULT_GRAVITY_CONFIG
    for _ in range(200):
        gravities = {"player1": rng.uniform(-1, 2), "player2": rng.choice([None, math.nan, rng.random()])}
        for _ in range(30):
            selection = pick(rng.choice(["player1", "player2"]), rng.choice(["closer", "neutral", "further"]))
            gravities = apply_gravity_updates(gravities, selection)
            for value in gravities.values():
                assert config.min_gravity <= value <= config.max_gravity


def test_exploration_phases():
    assert [get_exploration_phase(r).level for r in (1, 2, 3, 5, 6, 10)] == [
        "high", "high", "medium", "medium", "low", "low",
    ]
    assert get_exploration_phase(0).og_drift == 0.2
    assert get_exploration_phase(14).og_drift == 0.8
    assert get_exploration_phase(4).to_dict() == {"level": "medium", "ogDrift": 0.5, "rounds": [3, 5]}


def test_hard_convergence():
    assert not hard_convergence_active(9)
    assert hard_convergence_active(10)
    assert hard_convergence_active(12)


def test_influence_zones():
    assert influence_zone(0.15) == DESPERATION
    assert influence_zone(0.2) == DEAD_ZONE
    assert influence_zone(0.39) == DEAD_ZONE
    assert influence_zone(0.4) == INFLUENCE
    assert influence_zone(0.79) == INFLUENCE
    assert influence_zone(0.8) == CONVERGENCE
