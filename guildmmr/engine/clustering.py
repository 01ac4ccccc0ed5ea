"""
guildmmr.engine.clustering — Kill timing analysis
==================================================

Pure functions over a battle's kill feed:

* :func:`battle_duration_minutes` — first to last kill.
* :func:`kill_clustering_score` — how coordinated the fighting looked.
* :func:`guild_clustering_scores` — the same score per killing guild.
* :func:`detect_friend_groups` — guilds that barely touched each other.

Kills are identified by guild *name* here; the analysis engine maps names
to stable guild keys afterwards.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from guildmmr.constants import DEFAULT_BATTLE_DURATION_MIN

if TYPE_CHECKING:
    from guildmmr.engine.stats import GuildBattleStats
    from guildmmr.ingest.schemas import KillEvent

__all__ = [
    "battle_duration_minutes",
    "kill_clustering_score",
    "guild_clustering_scores",
    "detect_friend_groups",
    "count_cross_kills",
]

RAPID_WINDOW_SECONDS = 30
COORDINATED_WINDOW_SECONDS = 120
HIGH_VALUE_WINDOW_SECONDS = 60
HIGH_VALUE_FAME = 100_000

RAPID_WEIGHT = 0.3
COORDINATED_WEIGHT = 0.3
HIGH_VALUE_WEIGHT = 0.25
STREAK_WEIGHT = 0.15

FULL_WEIGHT_DURATION_MIN = 10
FRIEND_CROSS_KILL_RATIO = 0.1


def _sorted(kills: Iterable[KillEvent]) -> list[KillEvent]:
    return sorted(kills, key=lambda k: k.timestamp)


def _gap_seconds(a: KillEvent, b: KillEvent) -> float:
    return (b.timestamp - a.timestamp).total_seconds()


def battle_duration_minutes(kills: Sequence[KillEvent]) -> int:
    """Whole minutes between the first and last kill (at least 1).

    Battles with fewer than two kills default to 30 minutes.
    """
    if len(kills) < 2:
        return DEFAULT_BATTLE_DURATION_MIN
    ordered = _sorted(kills)
    minutes = _gap_seconds(ordered[0], ordered[-1]) / 60
    return max(1, math.floor(minutes))


# ---------------------------------------------------------------------------
# Clustering components
# ---------------------------------------------------------------------------
def rapid_kill_pairs(ordered: Sequence[KillEvent]) -> int:
    """Consecutive kills no more than 30 s apart."""
    return sum(
        1 for a, b in zip(ordered, ordered[1:])
        if _gap_seconds(a, b) <= RAPID_WINDOW_SECONDS
    )


def coordinated_attacks(ordered: Sequence[KillEvent]) -> int:
    """Three-kill sequences inside 120 s where the killing guild alternates.

    Scores 2 when the guild changes on both steps, 1 when only the first
    step changes guild.
    """
    score = 0
    for first, second, third in zip(ordered, ordered[1:], ordered[2:]):
        if _gap_seconds(first, third) > COORDINATED_WINDOW_SECONDS:
            continue
        g1 = first.killer.guild_name
        g2 = second.killer.guild_name
        g3 = third.killer.guild_name
        if g1 and g2 and g3 and g1 != g2 and g2 != g3:
            score += 2
        elif g1 and g2 and g1 != g2:
            score += 1
    return score


def high_value_pairs(ordered: Sequence[KillEvent]) -> float:
    """Pairs of ≥100k-fame kills within 60 s, weighted by their fame."""
    score = 0.0
    for a, b in zip(ordered, ordered[1:]):
        if (
            a.total_victim_kill_fame >= HIGH_VALUE_FAME
            and b.total_victim_kill_fame >= HIGH_VALUE_FAME
            and _gap_seconds(a, b) <= HIGH_VALUE_WINDOW_SECONDS
        ):
            score += (a.total_victim_kill_fame + b.total_victim_kill_fame) / HIGH_VALUE_FAME
    return score


def longest_streak(ordered: Sequence[KillEvent]) -> int:
    """Longest run of consecutive kills by one guild."""
    best = 0
    current = 0
    previous: str | None = None
    for kill in ordered:
        guild = kill.killer.guild_name
        if guild is not None and guild == previous:
            current += 1
        else:
            current = 1 if guild is not None else 0
        previous = guild
        best = max(best, current)
    return best


def _score(ordered: Sequence[KillEvent], duration_minutes: int) -> float:
    if len(ordered) < 2:
        return 0.0
    raw = (
        rapid_kill_pairs(ordered) * RAPID_WEIGHT
        + coordinated_attacks(ordered) * COORDINATED_WEIGHT
        + high_value_pairs(ordered) * HIGH_VALUE_WEIGHT
        + longest_streak(ordered) * STREAK_WEIGHT
    )
    return float(round(raw * min(1.0, duration_minutes / FULL_WEIGHT_DURATION_MIN)))


def kill_clustering_score(kills: Sequence[KillEvent], duration_minutes: int | None = None) -> float:
    """Battle-wide clustering score, damped for battles under 10 minutes."""
    if duration_minutes is None:
        duration_minutes = battle_duration_minutes(kills)
    return _score(_sorted(kills), duration_minutes)


def guild_clustering_scores(
    kills: Sequence[KillEvent], duration_minutes: int | None = None
) -> dict[str, float]:
    """Clustering score per guild, computed over the kills that guild made."""
    if duration_minutes is None:
        duration_minutes = battle_duration_minutes(kills)
    ordered = _sorted(kills)
    by_guild: dict[str, list[KillEvent]] = {}
    for kill in ordered:
        if kill.killer.guild_name:
            by_guild.setdefault(kill.killer.guild_name, []).append(kill)
    return {guild: _score(own, duration_minutes) for guild, own in by_guild.items()}


# ---------------------------------------------------------------------------
# Friend groups
# ---------------------------------------------------------------------------
def count_cross_kills(guild_a: str, guild_b: str, kills: Iterable[KillEvent]) -> int:
    """Kills in either direction between two guilds."""
    pair = {guild_a, guild_b}
    return sum(
        1 for k in kills
        if k.killer.guild_name in pair
        and k.victim.guild_name in pair
        and k.killer.guild_name != k.victim.guild_name
    )


def detect_friend_groups(
    guild_stats: Sequence[GuildBattleStats], kills: Sequence[KillEvent]
) -> list[list[str]]:
    """Greedy grouping of guilds that fought on the same side.

    Starting from each ungrouped guild, every other ungrouped guild whose
    cross-kills are under 10% of the two guilds' combined kills joins the
    group.  Only groups of two or more guilds are returned.
    """
    groups: list[list[str]] = []
    grouped: set[str] = set()
    for anchor in guild_stats:
        if anchor.guild_name in grouped:
            continue
        group = [anchor.guild_name]
        grouped.add(anchor.guild_name)
        for other in guild_stats:
            if other.guild_name in grouped:
                continue
            combined = anchor.kills + other.kills
            if combined <= 0:
                continue
            cross = count_cross_kills(anchor.guild_name, other.guild_name, kills)
            if cross / combined < FRIEND_CROSS_KILL_RATIO:
                group.append(other.guild_name)
                grouped.add(other.guild_name)
        if len(group) > 1:
            groups.append(group)
    return groups
