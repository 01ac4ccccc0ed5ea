"""
guildmmr.engine.stats — Per-battle value types
===============================================

:class:`GuildBattleStats` and :class:`BattleAnalysis` are what the analysis
engine hands to the rating engine.  They are transient, never persisted
directly, and carry everything the rating factors need so that delta
calculation stays a pure function.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from guildmmr.constants import BASE_MMR

__all__ = ["GuildBattleStats", "BattleAnalysis"]


@dataclass(slots=True)
class GuildBattleStats:
    """One guild's contribution within a single battle."""

    guild_id: str
    guild_name: str
    kills: int = 0
    deaths: int = 0
    fame_gained: int = 0
    fame_lost: int = 0
    players: int = 0
    avg_ip: float = 1000.0
    alliance_name: str | None = None
    kill_clustering: float = 0.0
    current_mmr: float = BASE_MMR

    @property
    def kills_deaths(self) -> int:
        return self.kills + self.deaths

    @property
    def kd_ratio(self) -> float:
        if self.deaths == 0:
            return float(self.kills)
        return self.kills / self.deaths

    @property
    def fame_differential(self) -> int:
        return self.fame_gained - self.fame_lost


@dataclass(slots=True)
class BattleAnalysis:
    """A battle reduced to the guilds that significantly took part in it."""

    battle_id: int
    season_id: int
    started_at: datetime
    guild_stats: list[GuildBattleStats]
    total_players: int
    total_fame: int
    battle_duration: int
    is_prime_time: bool = False
    kill_clustering: float = 0.0
    friend_groups: list[list[str]] = field(default_factory=list)
    guild_alliances: dict[str, str | None] = field(default_factory=dict)

    def get(self, guild_id: str) -> GuildBattleStats | None:
        for stats in self.guild_stats:
            if stats.guild_id == guild_id:
                return stats
        return None

    def alliance_of(self, guild_id: str) -> str | None:
        return self.guild_alliances.get(guild_id)

    def enemies_of(self, guild: GuildBattleStats) -> list[GuildBattleStats]:
        """Every other guild not sharing *guild*'s alliance.

        Without alliance data for *guild*, every other guild is an enemy.
        """
        own = self.alliance_of(guild.guild_id)
        return [
            other for other in self.guild_stats
            if other.guild_id != guild.guild_id
            and (own is None or self.alliance_of(other.guild_id) != own)
        ]

    def allies_of(self, guild: GuildBattleStats) -> list[GuildBattleStats]:
        """Guilds in the same alliance, *guild* included."""
        own = self.alliance_of(guild.guild_id)
        if own is None:
            return [guild]
        return [
            other for other in self.guild_stats
            if other.guild_id == guild.guild_id or self.alliance_of(other.guild_id) == own
        ]
