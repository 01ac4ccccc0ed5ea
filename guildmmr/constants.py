"""
guildmmr.constants — Rating Constants & Helpers
================================================

Single source of truth for the MMR baseline, factor weights, and the
K-factor / carryover formulas.  Import from here instead of duplicating
numbers across the analysis engine, rating engine, and services.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from guildmmr.engine.cache import SettingsCache

# Bumped whenever a formula or weight changes so log rows stay attributable.
CALCULATION_VERSION = "2.3.0"

# ---------------------------------------------------------------------------
# Baseline
# ---------------------------------------------------------------------------
BASE_MMR = 1000.0
BASE_K_FACTOR = 32.0

# Battle eligibility floor
MIN_TOTAL_PLAYERS = 25
MIN_TOTAL_FAME = 2_000_000

# ---------------------------------------------------------------------------
# Factor weights (sum to 1.0)
# ---------------------------------------------------------------------------
FACTOR_WEIGHTS: dict[str, float] = {
    "win_loss": 0.30,
    "fame_differential": 0.13,
    "player_count": 0.22,
    "ip_level": 0.04,
    "battle_size": 0.04,
    "kd_ratio": 0.04,
    "battle_duration": 0.03,
    "kill_clustering": 0.02,
    "opponent_strength": 0.13,
    "individual_performance": 0.05,
}

# ---------------------------------------------------------------------------
# Delta shaping
# ---------------------------------------------------------------------------
K_REDUCTION_PER_100 = 0.05
K_FLOOR_RATIO = 0.25

FULL_CREDIT_PLAYERS = 8
PLAYER_SCALING_EXPONENT = 0.8
SOLO_PLAYER_SCALING = 0.1

MAX_WIN_GAIN = 25.0

LOW_IP_THRESHOLD = 1000
LOW_IP_ENEMY_RATIO = 0.6
LOW_IP_PENALTY = 0.1
LOW_IP_MAX_GAIN = 3.0

ANTI_FARMING_LOOKBACK_DAYS = 30
ANTI_FARMING_THRESHOLD = 3
ANTI_FARMING_MAX_WINS = 10

CARRYOVER_RATIO = 0.3

DEFAULT_BATTLE_DURATION_MIN = 30


# ---------------------------------------------------------------------------
# Formulas
# ---------------------------------------------------------------------------
def dynamic_k_factor(mmr: float, cache: SettingsCache | None = None) -> float:
    """K-factor for a guild currently rated *mmr*.

    Shrinks geometrically by 5% per 100 MMR above the baseline and never
    drops under 25% of the base K::

        k = base_k * (1 - 0.05) ** ((mmr - 1000) / 100)

    At or below the baseline the full base K applies.
    """
    if cache is not None:
        base_k = cache.get_float("rating.k_factor", BASE_K_FACTOR)
        reduction = cache.get_float("rating.k_reduction_per_100", K_REDUCTION_PER_100)
        floor_ratio = cache.get_float("rating.k_floor_ratio", K_FLOOR_RATIO)
    else:
        base_k = BASE_K_FACTOR
        reduction = K_REDUCTION_PER_100
        floor_ratio = K_FLOOR_RATIO

    if mmr <= BASE_MMR:
        return base_k
    scaled = base_k * (1.0 - reduction) ** ((mmr - BASE_MMR) / 100.0)
    return max(base_k * floor_ratio, scaled)


def player_count_scaling(players: int) -> float:
    """Delta multiplier for a guild that fielded *players* members.

    Full credit from 8 players up; ``(players / 8) ** 0.8`` below that,
    and a flat 10% for a solo player.
    """
    if players <= 1:
        return SOLO_PLAYER_SCALING
    if players >= FULL_CREDIT_PLAYERS:
        return 1.0
    return (players / FULL_CREDIT_PLAYERS) ** PLAYER_SCALING_EXPONENT


def carryover_mmr(mmr: float, ratio: float = CARRYOVER_RATIO) -> float:
    """Compress *mmr* toward the baseline for the next season (never below it)."""
    return max(BASE_MMR, BASE_MMR + (mmr - BASE_MMR) * ratio)
