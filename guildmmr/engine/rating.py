"""
guildmmr.engine.rating — Rating Delta Pipeline
===============================================

Pure calculation: no DB I/O.  Everything the pipeline needs is already on
the :class:`BattleAnalysis`, plus an optional *history* of prior wins for
the anti-farming step and an optional settings cache for tunables.

Pipeline stages (per guild):
  factors → weighted sum → × dynamic K → × player scaling
  → easy-win cap → winner floor / loser cap → K/D+fame guard
  → low-IP farming penalty → anti-farming factor → DeltaResult
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from guildmmr import constants as C
from guildmmr.engine.factors import FACTORS, compute_factors
from guildmmr.engine.stats import BattleAnalysis, GuildBattleStats

if TYPE_CHECKING:
    from guildmmr.engine.cache import SettingsCache

logger = logging.getLogger(__name__)

__all__ = [
    "DeltaResult",
    "RatingParams",
    "anti_farming_factor",
    "calculate_delta",
    "calculate_deltas",
    "is_low_ip_farming",
]

WinHistory = Mapping[str, Mapping[str, int]]
"""``guild_id`` → ``{enemy_guild_id: prior_wins_in_lookback}``."""


# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RatingParams:
    max_win_gain: float = C.MAX_WIN_GAIN
    low_ip_threshold: float = C.LOW_IP_THRESHOLD
    low_ip_enemy_ratio: float = C.LOW_IP_ENEMY_RATIO
    low_ip_penalty: float = C.LOW_IP_PENALTY
    low_ip_max_gain: float = C.LOW_IP_MAX_GAIN
    anti_farming_threshold: int = C.ANTI_FARMING_THRESHOLD
    anti_farming_max_wins: int = C.ANTI_FARMING_MAX_WINS

    @classmethod
    def from_cache(cls, cache: SettingsCache) -> RatingParams:
        return cls(
            max_win_gain=cache.get_float("rating.max_win_gain", C.MAX_WIN_GAIN),
            low_ip_threshold=cache.get_float("rating.low_ip_threshold", C.LOW_IP_THRESHOLD),
            low_ip_enemy_ratio=cache.get_float("rating.low_ip_enemy_ratio", C.LOW_IP_ENEMY_RATIO),
            low_ip_penalty=cache.get_float("rating.low_ip_penalty", C.LOW_IP_PENALTY),
            low_ip_max_gain=cache.get_float("rating.low_ip_max_gain", C.LOW_IP_MAX_GAIN),
            anti_farming_threshold=cache.get_int(
                "rating.anti_farming_threshold", C.ANTI_FARMING_THRESHOLD
            ),
            anti_farming_max_wins=cache.get_int(
                "rating.anti_farming_max_wins", C.ANTI_FARMING_MAX_WINS
            ),
        )


# ---------------------------------------------------------------------------
# DeltaResult — output of the pipeline
# ---------------------------------------------------------------------------
@dataclass
class DeltaResult:
    """One guild's rating outcome for one battle."""

    guild_id: str
    delta: float
    is_win: bool
    k_factor: float
    factors: dict[str, dict[str, float]] = field(default_factory=dict)
    original_delta: float | None = None
    anti_farming_factor: float | None = None
    low_ip_penalized: bool = False
    opponents: list[str] = field(default_factory=list)
    opponent_mmrs: list[float] = field(default_factory=list)

    @property
    def weighted_sum(self) -> float:
        return sum(f["weighted"] for f in self.factors.values())


# ---------------------------------------------------------------------------
# Farming checks
# ---------------------------------------------------------------------------
def anti_farming_factor(
    wins: int,
    threshold: int = C.ANTI_FARMING_THRESHOLD,
    max_wins: int = C.ANTI_FARMING_MAX_WINS,
) -> float:
    """Multiplier for a guild's *wins*-th win against the same enemy.

    1.0 up to *threshold* wins, then falls linearly to 0.0 at *max_wins*.
    """
    if wins <= threshold:
        return 1.0
    if max_wins <= threshold:
        return 0.0
    return max(0.0, 1.0 - (wins - threshold) / (max_wins - threshold))


def is_low_ip_farming(
    enemies: list[GuildBattleStats],
    threshold: float = C.LOW_IP_THRESHOLD,
    ratio: float = C.LOW_IP_ENEMY_RATIO,
) -> bool:
    """True when at least *ratio* of the enemy guilds were under-geared."""
    if not enemies:
        return False
    low = sum(1 for e in enemies if e.avg_ip < threshold)
    return low / len(enemies) >= ratio


# ---------------------------------------------------------------------------
# Per-guild pipeline
# ---------------------------------------------------------------------------
def calculate_delta(
    guild: GuildBattleStats,
    analysis: BattleAnalysis,
    prior_wins: Mapping[str, int] | None = None,
    cache: SettingsCache | None = None,
    params: RatingParams | None = None,
) -> DeltaResult:
    """Run the delta pipeline for *guild*.

    *prior_wins* maps enemy guild ids to the number of wins this guild
    already logged against them inside the anti-farming lookback.
    """
    if params is None:
        params = RatingParams.from_cache(cache) if cache is not None else RatingParams()

    enemies = analysis.enemies_of(guild)
    values = compute_factors(guild, analysis)
    breakdown = {
        name: {
            "value": values[name],
            "weight": C.FACTOR_WEIGHTS[name],
            "weighted": values[name] * C.FACTOR_WEIGHTS[name],
        }
        for name in FACTORS
    }
    weighted_sum = sum(f["weighted"] for f in breakdown.values())

    k = C.dynamic_k_factor(guild.current_mmr, cache)
    delta = weighted_sum * k * C.player_count_scaling(guild.players)

    win_loss = values["win_loss"]
    is_win = win_loss > 0
    if is_win:
        delta = min(delta, params.max_win_gain)
        delta = max(delta, 0.0)
    elif win_loss < 0:
        delta = min(delta, 0.0)

    if guild.kd_ratio >= 1.0 and guild.fame_differential > 0:
        delta = max(delta, 0.0)

    result = DeltaResult(
        guild_id=guild.guild_id,
        delta=delta,
        is_win=is_win,
        k_factor=k,
        factors=breakdown,
        opponents=[e.guild_id for e in enemies],
        opponent_mmrs=[e.current_mmr for e in enemies],
    )

    if not (is_win and delta > 0):
        return result

    if is_low_ip_farming(enemies, params.low_ip_threshold, params.low_ip_enemy_ratio):
        result.delta = min(result.delta * params.low_ip_penalty, params.low_ip_max_gain)
        result.low_ip_penalized = True
        logger.info(
            "Battle %d: %s beat low-IP opponents, delta cut to %.2f",
            analysis.battle_id, guild.guild_name, result.delta,
        )

    # The battle being rated counts as one more win against each enemy
    repeat_wins = max(
        (prior_wins or {}).get(e.guild_id, 0) + 1 for e in enemies
    ) if enemies else 1
    factor = anti_farming_factor(
        repeat_wins, params.anti_farming_threshold, params.anti_farming_max_wins
    )
    if factor < 1.0:
        result.original_delta = result.delta
        result.delta *= factor
        logger.info(
            "Battle %d: %s has %d wins vs one enemy, anti-farming %.2f (%.2f → %.2f)",
            analysis.battle_id, guild.guild_name, repeat_wins, factor,
            result.original_delta, result.delta,
        )
    result.anti_farming_factor = factor
    return result


def calculate_deltas(
    analysis: BattleAnalysis,
    history: WinHistory | None = None,
    cache: SettingsCache | None = None,
) -> dict[str, DeltaResult]:
    """Delta for every guild in *analysis*, keyed by guild id."""
    params = RatingParams.from_cache(cache) if cache is not None else RatingParams()
    history = history or {}
    results: dict[str, DeltaResult] = {}
    for guild in analysis.guild_stats:
        results[guild.guild_id] = calculate_delta(
            guild, analysis, history.get(guild.guild_id), cache, params
        )
    logger.debug(
        "Battle %d deltas: %s",
        analysis.battle_id,
        {gid: round(r.delta, 2) for gid, r in results.items()},
    )
    return results
