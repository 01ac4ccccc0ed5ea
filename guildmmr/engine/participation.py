"""
guildmmr.engine.participation — Significance filter
====================================================

Decides whether a guild's involvement in a battle is large enough to let
the battle move its MMR.  The decision is an ordered list of named rules;
the first rule that returns a verdict wins:

1. ``single_player_floor`` — a guild of at most one player must clear a
   strict standalone bar (kills+deaths and fame, both scaled for small
   battles).
2. ``small_group_floor`` — guilds of up to three players need two of the
   three ratio criteria plus a minimum kills+deaths count.
3. ``ratio_or_alliance`` — everyone else needs two of three criteria and
   at least one kill or death, or membership in a major alliance.

The three criteria each pass on a relative share of the battle *or* an
absolute floor.  Floors shrink for small battles and again for guilds in
one of the battle's highest-fame alliances.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from guildmmr.engine.stats import GuildBattleStats

if TYPE_CHECKING:
    from guildmmr.engine.cache import SettingsCache

logger = logging.getLogger(__name__)

__all__ = [
    "ParticipationThresholds",
    "ParticipationContext",
    "PARTICIPATION_RULES",
    "build_context",
    "criteria_met",
    "evaluate_participation",
    "filter_significant",
    "major_alliances",
]


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ParticipationThresholds:
    relative_threshold: float = 0.15
    min_fame: int = 1_000_000
    min_kills_deaths: int = 12
    min_players: int = 2
    small_battle_kd_cutoff: int = 20
    small_battle_scale: float = 0.45
    major_alliance_bonus: float = 0.3
    major_alliance_count: int = 3
    single_player_min_kills_deaths: int = 8
    single_player_min_fame: int = 1_000_000
    small_group_max_players: int = 3
    small_group_min_kills_deaths: int = 3

    @classmethod
    def from_cache(cls, cache: SettingsCache) -> ParticipationThresholds:
        """Read overrides from the ``participation.*`` settings keys."""
        d = cls()
        p = "participation."
        return cls(
            relative_threshold=cache.get_float(p + "relative_threshold", d.relative_threshold),
            min_fame=cache.get_int(p + "min_fame", d.min_fame),
            min_kills_deaths=cache.get_int(p + "min_kills_deaths", d.min_kills_deaths),
            min_players=cache.get_int(p + "min_players", d.min_players),
            small_battle_kd_cutoff=cache.get_int(
                p + "small_battle_kd_cutoff", d.small_battle_kd_cutoff
            ),
            small_battle_scale=cache.get_float(p + "small_battle_scale", d.small_battle_scale),
            major_alliance_bonus=cache.get_float(
                p + "major_alliance_bonus", d.major_alliance_bonus
            ),
            major_alliance_count=cache.get_int(
                p + "major_alliance_count", d.major_alliance_count
            ),
            single_player_min_kills_deaths=cache.get_int(
                p + "single_player_min_kills_deaths", d.single_player_min_kills_deaths
            ),
            single_player_min_fame=cache.get_int(
                p + "single_player_min_fame", d.single_player_min_fame
            ),
            small_group_max_players=cache.get_int(
                p + "small_group_max_players", d.small_group_max_players
            ),
            small_group_min_kills_deaths=cache.get_int(
                p + "small_group_min_kills_deaths", d.small_group_min_kills_deaths
            ),
        )


@dataclass(frozen=True, slots=True)
class ParticipationContext:
    """Battle-wide totals every rule is evaluated against."""

    total_fame: int
    total_kills_deaths: int
    total_players: int
    major_alliances: frozenset[str]
    thresholds: ParticipationThresholds

    @property
    def is_small_battle(self) -> bool:
        return self.total_kills_deaths <= self.thresholds.small_battle_kd_cutoff

    @property
    def small_battle_scale(self) -> float:
        return self.thresholds.small_battle_scale if self.is_small_battle else 1.0

    def in_major_alliance(self, stats: GuildBattleStats) -> bool:
        return stats.alliance_name is not None and stats.alliance_name in self.major_alliances

    def floor_scale(self, stats: GuildBattleStats) -> float:
        scale = self.small_battle_scale
        if self.in_major_alliance(stats):
            scale *= 1.0 - self.thresholds.major_alliance_bonus
        return scale

    def relative_threshold(self, stats: GuildBattleStats) -> float:
        threshold = self.thresholds.relative_threshold
        if self.in_major_alliance(stats):
            threshold *= 1.0 - self.thresholds.major_alliance_bonus
        return threshold


def major_alliances(guild_stats: Iterable[GuildBattleStats], count: int = 3) -> frozenset[str]:
    """The *count* alliances with the most fame (gained + lost) in the battle."""
    fame: dict[str, int] = defaultdict(int)
    for stats in guild_stats:
        if stats.alliance_name:
            fame[stats.alliance_name] += stats.fame_gained + stats.fame_lost
    ranked = sorted((f, name) for name, f in fame.items() if f > 0)
    return frozenset(name for _, name in ranked[::-1][:count])


def build_context(
    guild_stats: list[GuildBattleStats],
    total_fame: int,
    total_players: int,
    thresholds: ParticipationThresholds | None = None,
) -> ParticipationContext:
    thresholds = thresholds or ParticipationThresholds()
    return ParticipationContext(
        total_fame=total_fame,
        total_kills_deaths=sum(s.kills_deaths for s in guild_stats),
        total_players=total_players,
        major_alliances=major_alliances(guild_stats, thresholds.major_alliance_count),
        thresholds=thresholds,
    )


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------
def fame_criterion(stats: GuildBattleStats, ctx: ParticipationContext) -> bool:
    involvement = stats.fame_gained + stats.fame_lost
    ratio = involvement / ctx.total_fame if ctx.total_fame > 0 else 0.0
    floor = ctx.thresholds.min_fame * ctx.floor_scale(stats)
    return ratio >= ctx.relative_threshold(stats) or involvement >= floor


def kills_deaths_criterion(stats: GuildBattleStats, ctx: ParticipationContext) -> bool:
    kd = stats.kills_deaths
    ratio = kd / ctx.total_kills_deaths if ctx.total_kills_deaths > 0 else 0.0
    floor = ctx.thresholds.min_kills_deaths * ctx.floor_scale(stats)
    return ratio >= ctx.relative_threshold(stats) or kd >= floor


def player_criterion(stats: GuildBattleStats, ctx: ParticipationContext) -> bool:
    ratio = stats.players / ctx.total_players if ctx.total_players > 0 else 0.0
    floor = ctx.thresholds.min_players * ctx.floor_scale(stats)
    return ratio >= ctx.relative_threshold(stats) or stats.players >= floor


CRITERIA: tuple[Callable[[GuildBattleStats, ParticipationContext], bool], ...] = (
    fame_criterion,
    kills_deaths_criterion,
    player_criterion,
)


def criteria_met(stats: GuildBattleStats, ctx: ParticipationContext) -> int:
    return sum(1 for criterion in CRITERIA if criterion(stats, ctx))


# ---------------------------------------------------------------------------
# Rules — each returns True/False for a verdict, None to defer
# ---------------------------------------------------------------------------
ParticipationRule = Callable[[GuildBattleStats, ParticipationContext], bool | None]


def single_player_floor(stats: GuildBattleStats, ctx: ParticipationContext) -> bool | None:
    if stats.players > 1:
        return None
    t = ctx.thresholds
    scale = ctx.small_battle_scale
    return (
        stats.kills_deaths > 0
        and stats.kills_deaths >= t.single_player_min_kills_deaths * scale
        and stats.fame_gained + stats.fame_lost >= t.single_player_min_fame * scale
    )


def small_group_floor(stats: GuildBattleStats, ctx: ParticipationContext) -> bool | None:
    t = ctx.thresholds
    if stats.players > t.small_group_max_players:
        return None
    return (
        criteria_met(stats, ctx) >= 2
        and stats.kills_deaths >= t.small_group_min_kills_deaths
    )


def ratio_or_alliance(stats: GuildBattleStats, ctx: ParticipationContext) -> bool | None:
    if ctx.in_major_alliance(stats):
        return True
    return criteria_met(stats, ctx) >= 2 and stats.kills_deaths > 0


PARTICIPATION_RULES: tuple[tuple[str, ParticipationRule], ...] = (
    ("single_player_floor", single_player_floor),
    ("small_group_floor", small_group_floor),
    ("ratio_or_alliance", ratio_or_alliance),
)


def evaluate_participation(
    stats: GuildBattleStats,
    ctx: ParticipationContext,
    rules: tuple[tuple[str, ParticipationRule], ...] = PARTICIPATION_RULES,
) -> tuple[bool, str]:
    """Return ``(significant, deciding_rule_name)``."""
    for name, rule in rules:
        verdict = rule(stats, ctx)
        if verdict is not None:
            return verdict, name
    return False, "no_rule"


def filter_significant(
    guild_stats: list[GuildBattleStats],
    total_fame: int,
    total_players: int,
    thresholds: ParticipationThresholds | None = None,
) -> tuple[list[GuildBattleStats], list[GuildBattleStats]]:
    """Split *guild_stats* into ``(significant, dropped)``."""
    ctx = build_context(guild_stats, total_fame, total_players, thresholds)
    kept: list[GuildBattleStats] = []
    dropped: list[GuildBattleStats] = []
    for stats in guild_stats:
        significant, rule = evaluate_participation(stats, ctx)
        if significant:
            kept.append(stats)
        else:
            logger.debug(
                "Dropping %s (%s): %d kills, %d deaths, %d fame, %d players",
                stats.guild_name, rule, stats.kills, stats.deaths,
                stats.fame_gained + stats.fame_lost, stats.players,
            )
            dropped.append(stats)
    return kept, dropped
