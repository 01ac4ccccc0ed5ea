"""
guildmmr.engine.factors — The ten rating factors
=================================================

Each factor looks at one guild inside one :class:`BattleAnalysis` and
returns a value in roughly ``[-1, 1]``.  The rating engine multiplies
them by :data:`~guildmmr.constants.FACTOR_WEIGHTS` and sums.

All functions are pure.  "Enemies" always means
:meth:`BattleAnalysis.enemies_of`: every other guild when the guild has no
alliance, otherwise every guild outside that alliance.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence

from guildmmr.engine.stats import BattleAnalysis, GuildBattleStats

__all__ = [
    "FACTORS",
    "battle_duration_factor",
    "battle_size_factor",
    "compute_factors",
    "fame_differential_factor",
    "individual_performance_factor",
    "ip_level_factor",
    "kd_ratio_factor",
    "kill_clustering_factor",
    "opponent_strength_factor",
    "player_count_factor",
    "win_loss_factor",
]

OPPONENT_MMR_SCALE = 100.0

# Win/loss blend
WIN_LOSS_BLEND = (
    ("kills", 0.35),
    ("deaths", 0.25),
    ("fame_gained", 0.25),
    ("fame_lost", 0.15),
)
WIN_LOSS_SHARPNESS = 2.0


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _share(own: float, total: float) -> float:
    return own / total if total > 0 else 0.0


def _relative(actual: float, expected: float) -> float:
    """How far *actual* beats *expected*, as a fraction of the room available."""
    if actual >= expected:
        room = 1.0 - expected
    else:
        room = expected
    if room <= 0:
        return 0.0
    return _clamp((actual - expected) / room)


# ---------------------------------------------------------------------------
# Step functions
# ---------------------------------------------------------------------------
def battle_size_factor(total_players: int) -> float:
    if total_players >= 100:
        return 1.0
    if total_players >= 50:
        return 0.7
    if total_players >= 25:
        return 0.4
    return 0.1


def kd_ratio_factor(guild: GuildBattleStats) -> float:
    if guild.deaths == 0:
        return 1.0 if guild.kills > 0 else 0.0
    ratio = guild.kills / guild.deaths
    if ratio >= 3:
        return 1.0
    if ratio >= 2:
        return 0.5
    if ratio >= 1:
        return 0.0
    if ratio >= 0.5:
        return -0.5
    return -1.0


def battle_duration_factor(minutes: int) -> float:
    """Quick, decisive battles score higher than drawn-out ones."""
    if minutes <= 5:
        return 1.0
    if minutes <= 15:
        return 0.5
    if minutes <= 30:
        return 0.0
    if minutes <= 60:
        return -0.3
    return -0.7


def kill_clustering_factor(score: float) -> float:
    if score >= 15:
        return 1.0
    if score >= 10:
        return 0.8
    if score >= 5:
        return 0.6
    if score >= 2:
        return 0.3
    return 0.1


# ---------------------------------------------------------------------------
# Guild-vs-battle factors
# ---------------------------------------------------------------------------
def _side_ratio(guild: GuildBattleStats, analysis: BattleAnalysis,
                enemies: Sequence[GuildBattleStats]) -> float | None:
    """Own side's players divided by the enemy side's players."""
    own_players = sum(g.players for g in analysis.allies_of(guild))
    enemy_players = sum(g.players for g in enemies)
    if enemy_players <= 0:
        return None
    return own_players / enemy_players


def win_loss_factor(
    guild: GuildBattleStats,
    analysis: BattleAnalysis,
    enemies: Sequence[GuildBattleStats],
) -> float:
    """Blended performance against the share the guild's numbers predict.

    The guild's expected share of kills and fame gained is its share of the
    players on the field (itself plus its enemies); its expected share of
    deaths and fame lost is the enemies' player share.  Each component is
    scored by :func:`_relative`, blended, sharpened with ``tanh`` and then
    scaled down for small battles and for favourites.  Positive means the
    guild won.
    """
    if not enemies:
        return 0.0

    enemy_players = sum(e.players for e in enemies)
    total_players = guild.players + enemy_players
    if total_players <= 0:
        return 0.0
    expected = guild.players / total_players

    components = {
        "kills": _relative(
            _share(guild.kills, guild.kills + sum(e.kills for e in enemies)), expected
        ),
        "deaths": -_relative(
            _share(guild.deaths, guild.deaths + sum(e.deaths for e in enemies)), 1.0 - expected
        ),
        "fame_gained": _relative(
            _share(guild.fame_gained, guild.fame_gained + sum(e.fame_gained for e in enemies)),
            expected,
        ),
        "fame_lost": -_relative(
            _share(guild.fame_lost, guild.fame_lost + sum(e.fame_lost for e in enemies)),
            1.0 - expected,
        ),
    }
    # Components with no events on either side say nothing
    if guild.kills + sum(e.kills for e in enemies) == 0:
        components["kills"] = 0.0
    if guild.deaths + sum(e.deaths for e in enemies) == 0:
        components["deaths"] = 0.0
    if guild.fame_gained + sum(e.fame_gained for e in enemies) == 0:
        components["fame_gained"] = 0.0
    if guild.fame_lost + sum(e.fame_lost for e in enemies) == 0:
        components["fame_lost"] = 0.0

    raw = sum(components[name] * weight for name, weight in WIN_LOSS_BLEND)
    if raw == 0:
        return 0.0
    score = math.tanh(WIN_LOSS_SHARPNESS * raw) / math.tanh(WIN_LOSS_SHARPNESS)

    # Battle size: small fights count for less
    score *= 0.8 + 0.2 * battle_size_factor(analysis.total_players)

    # Underdogs win bigger and lose smaller; favourites the reverse
    ratio = _side_ratio(guild, analysis, enemies)
    if ratio is not None and ratio > 0:
        if score > 0:
            if ratio < 1:
                score *= 1.0 + min(0.5, (1.0 - ratio) * 0.5)
            else:
                score *= max(0.75, ratio ** -0.25)
        else:
            if ratio < 1:
                score *= max(0.5, ratio ** 0.5)
            else:
                score *= min(1.5, 1.0 + (ratio - 1.0) * 0.25)

    return _clamp(score)


def fame_differential_factor(guild: GuildBattleStats, analysis: BattleAnalysis) -> float:
    if analysis.total_fame <= 0:
        return 0.0
    return _clamp(guild.fame_differential / analysis.total_fame)


def player_count_factor(
    guild: GuildBattleStats,
    analysis: BattleAnalysis,
    enemies: Sequence[GuildBattleStats],
) -> float:
    """Penalty for outnumbering the enemy, tiered bonus for being outnumbered.

    Compares the guild's side (its alliance, or just itself) against all
    enemy players.  Being the larger side earns nothing.
    """
    ratio = _side_ratio(guild, analysis, enemies)
    if ratio is None:
        return 0.0
    if ratio >= 2.0:
        return -1.0
    if ratio >= 1.5:
        return -0.8
    if ratio >= 1.3:
        return -0.6
    if ratio >= 1.0:
        return 0.0
    if ratio <= 0.3:
        return 0.5
    if ratio <= 0.5:
        return 0.35
    if ratio <= 0.7:
        return 0.2
    if ratio <= 0.9:
        return 0.1
    return 0.0


def ip_level_factor(guild: GuildBattleStats, analysis: BattleAnalysis) -> float:
    """Gear advantage is penalised, gear disadvantage rewarded."""
    if not analysis.guild_stats:
        return 0.0
    avg_ip = sum(g.avg_ip for g in analysis.guild_stats) / len(analysis.guild_stats)
    if avg_ip <= 0:
        return 0.0
    ratio = guild.avg_ip / avg_ip
    if ratio > 1.2:
        return -0.3
    if ratio < 0.8:
        return 0.3
    return 0.0


def opponent_strength_factor(
    guild: GuildBattleStats, enemies: Sequence[GuildBattleStats]
) -> float:
    """``-tanh((mmr - avg_enemy_mmr) / 100)``; 0 when the guild's K/D is under 1."""
    if not enemies or guild.kd_ratio < 1.0:
        return 0.0
    avg_enemy = sum(e.current_mmr for e in enemies) / len(enemies)
    return _clamp(-math.tanh((guild.current_mmr - avg_enemy) / OPPONENT_MMR_SCALE))


def individual_performance_factor(guild: GuildBattleStats, analysis: BattleAnalysis) -> float:
    """Share of the alliance's output versus share of the alliance's players.

    Guilds without an alliance are compared against the battle's per-guild
    averages instead.  A guild alone in its alliance scores 0.
    """
    if analysis.alliance_of(guild.guild_id) is None:
        return _battle_average_performance(guild, analysis)

    allies = analysis.allies_of(guild)
    if len(allies) <= 1:
        return 0.0

    player_share = _share(guild.players, sum(g.players for g in allies))
    if player_share <= 0:
        return 0.0

    kill_share = _share(guild.kills, sum(g.kills for g in allies))
    death_share = _share(guild.deaths, sum(g.deaths for g in allies))
    gained_share = _share(guild.fame_gained, sum(g.fame_gained for g in allies))
    lost_share = _share(guild.fame_lost, sum(g.fame_lost for g in allies))

    score = (kill_share - player_share) * 1.0
    if kill_share < player_share * 0.3:
        score -= 0.2
    score -= (death_share - player_share) * 0.8
    if death_share > player_share * 2.0:
        score -= 0.1
    score += (gained_share - player_share) * 0.5
    score -= (lost_share - player_share) * 0.5
    return _clamp(score)


def _battle_average_performance(guild: GuildBattleStats, analysis: BattleAnalysis) -> float:
    stats = analysis.guild_stats
    n = len(stats)
    if n == 0:
        return 0.0

    def ratio(value: float, attr: Callable[[GuildBattleStats], float]) -> float:
        avg = sum(attr(g) for g in stats) / n
        return value / avg if avg > 0 else 0.0

    player_ratio = ratio(guild.players, lambda g: g.players)
    if player_ratio <= 0:
        return 0.0
    score = (ratio(guild.kills, lambda g: g.kills) - player_ratio) * 2.0
    score -= (ratio(guild.deaths, lambda g: g.deaths) - player_ratio) * 1.5
    score += (ratio(guild.fame_gained, lambda g: g.fame_gained) - player_ratio) * 1.0
    score -= (ratio(guild.fame_lost, lambda g: g.fame_lost) - player_ratio) * 1.0
    return _clamp(score)


# ---------------------------------------------------------------------------
# All ten
# ---------------------------------------------------------------------------
FACTORS: tuple[str, ...] = (
    "win_loss",
    "fame_differential",
    "player_count",
    "ip_level",
    "battle_size",
    "kd_ratio",
    "battle_duration",
    "kill_clustering",
    "opponent_strength",
    "individual_performance",
)


def compute_factors(guild: GuildBattleStats, analysis: BattleAnalysis) -> dict[str, float]:
    """Every factor for *guild*, keyed as in :data:`FACTORS`."""
    enemies = analysis.enemies_of(guild)
    return {
        "win_loss": win_loss_factor(guild, analysis, enemies),
        "fame_differential": fame_differential_factor(guild, analysis),
        "player_count": player_count_factor(guild, analysis, enemies),
        "ip_level": ip_level_factor(guild, analysis),
        "battle_size": battle_size_factor(analysis.total_players),
        "kd_ratio": kd_ratio_factor(guild),
        "battle_duration": battle_duration_factor(analysis.battle_duration),
        "kill_clustering": kill_clustering_factor(guild.kill_clustering),
        "opponent_strength": opponent_strength_factor(guild, enemies),
        "individual_performance": individual_performance_factor(guild, analysis),
    }
