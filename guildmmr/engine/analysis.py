"""
guildmmr.engine.analysis — Battle Analysis Engine
==================================================

Turns one battle summary plus its kill feed into a :class:`BattleAnalysis`
the rating engine can consume, or ``None`` when the battle should not
move anyone's MMR.

Pipeline (numbered as in :meth:`BattleAnalysisEngine.create_analysis`):

1. Eligibility floor — total players and total fame.
2. Season resolution for the battle's start time.
3. Per-guild stats from the summary; fame lost from the kill feed.
4. Alliance resolution (summary first, then killer/victim records).
5. Significance filter (:mod:`guildmmr.engine.participation`).
6. At least two significant guilds.
7. Battle duration.
8. Kill clustering, battle-wide and per guild.
9. Friend groups.
10. Current MMR snapshot per guild.

Steps 1 and 3–9 are pure; steps 2 and 10 only read from the database.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from sqlalchemy import select

from guildmmr import constants as C
from guildmmr.database.models import GuildSeason
from guildmmr.engine.clustering import (
    battle_duration_minutes,
    detect_friend_groups,
    guild_clustering_scores,
    kill_clustering_score,
)
from guildmmr.engine.participation import ParticipationThresholds, filter_significant
from guildmmr.engine.stats import BattleAnalysis, GuildBattleStats
from guildmmr.services import guild_service, season_service

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.orm import Session

    from guildmmr.engine.cache import SettingsCache
    from guildmmr.ingest.schemas import BattleSummary, KillEvent

logger = logging.getLogger(__name__)

__all__ = ["BattleAnalysisEngine", "build_guild_stats", "is_eligible"]

DEFAULT_IP = 1000.0


def is_eligible(
    total_players: int,
    total_fame: int,
    min_players: int = C.MIN_TOTAL_PLAYERS,
    min_fame: int = C.MIN_TOTAL_FAME,
) -> bool:
    """Battle-level floor for MMR consideration."""
    return total_players >= min_players and total_fame >= min_fame


# ---------------------------------------------------------------------------
# Per-guild stats
# ---------------------------------------------------------------------------
def _member_ips(guild_name: str, kills: Sequence[KillEvent]) -> list[float]:
    ips: list[float] = []
    for kill in kills:
        if kill.killer.guild_name == guild_name and kill.killer.average_item_power > 0:
            ips.append(kill.killer.average_item_power)
        if kill.victim.guild_name == guild_name and kill.victim.average_item_power > 0:
            ips.append(kill.victim.average_item_power)
    return ips


def _alliance_from_kills(guild_name: str, kills: Sequence[KillEvent]) -> str | None:
    for kill in kills:
        if kill.killer.guild_name == guild_name and kill.killer.alliance_name:
            return kill.killer.alliance_name
        if kill.victim.guild_name == guild_name and kill.victim.alliance_name:
            return kill.victim.alliance_name
    return None


def build_guild_stats(
    battle: BattleSummary, kills: Sequence[KillEvent]
) -> list[GuildBattleStats]:
    """One :class:`GuildBattleStats` per named guild in *battle*.

    Kills, deaths, fame gained and players come from the summary.  Fame
    lost is always derived from the kill feed.  When the summary reports
    neither kills nor deaths for a guild (the list endpoint omits them),
    both are counted from the kill feed instead.  If the summary names no
    guilds at all, guilds are reconstructed from the kill feed alone.
    """
    kills_by: dict[str, int] = {}
    deaths_by: dict[str, int] = {}
    fame_gained_by: dict[str, int] = {}
    fame_lost_by: dict[str, int] = {}
    for kill in kills:
        fame = kill.total_victim_kill_fame
        if kill.killer.guild_name:
            g = kill.killer.guild_name
            kills_by[g] = kills_by.get(g, 0) + 1
            fame_gained_by[g] = fame_gained_by.get(g, 0) + fame
        if kill.victim.guild_name:
            g = kill.victim.guild_name
            deaths_by[g] = deaths_by.get(g, 0) + 1
            fame_lost_by[g] = fame_lost_by.get(g, 0) + fame

    stats: list[GuildBattleStats] = []
    seen: set[str] = set()

    for summary in battle.guilds:
        if not summary.name or summary.name in seen:
            continue
        seen.add(summary.name)
        name = summary.name
        ips = _member_ips(name, kills)
        kills_count, deaths_count = summary.kills, summary.deaths
        if kills_count == 0 and deaths_count == 0:
            kills_count = kills_by.get(name, 0)
            deaths_count = deaths_by.get(name, 0)
        stats.append(GuildBattleStats(
            guild_id=guild_service.guild_key(summary.id, name),
            guild_name=name,
            kills=kills_count,
            deaths=deaths_count,
            fame_gained=summary.kill_fame,
            fame_lost=fame_lost_by.get(name, 0),
            players=summary.players,
            avg_ip=summary.ip or (sum(ips) / len(ips) if ips else DEFAULT_IP),
            alliance_name=summary.alliance or _alliance_from_kills(name, kills),
        ))

    if not stats:
        for name in sorted(set(kills_by) | set(deaths_by)):
            ips = _member_ips(name, kills)
            members = {
                p.name
                for k in kills
                for p in (k.killer, k.victim)
                if p.guild_name == name
            }
            stats.append(GuildBattleStats(
                guild_id=guild_service.guild_key(None, name),
                guild_name=name,
                kills=kills_by.get(name, 0),
                deaths=deaths_by.get(name, 0),
                fame_gained=fame_gained_by.get(name, 0),
                fame_lost=fame_lost_by.get(name, 0),
                players=len(members),
                avg_ip=sum(ips) / len(ips) if ips else DEFAULT_IP,
                alliance_name=_alliance_from_kills(name, kills),
            ))

    return stats


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class BattleAnalysisEngine:
    """Builds :class:`BattleAnalysis` values.

    Tunables are read from *cache* when one is given, otherwise the
    module defaults apply.
    """

    def __init__(
        self,
        cache: SettingsCache | None = None,
        thresholds: ParticipationThresholds | None = None,
    ) -> None:
        if thresholds is None:
            thresholds = (
                ParticipationThresholds.from_cache(cache) if cache is not None
                else ParticipationThresholds()
            )
        self.thresholds = thresholds
        if cache is not None:
            self.min_players = cache.get_int("battle.min_total_players", C.MIN_TOTAL_PLAYERS)
            self.min_fame = cache.get_int("battle.min_total_fame", C.MIN_TOTAL_FAME)
        else:
            self.min_players = C.MIN_TOTAL_PLAYERS
            self.min_fame = C.MIN_TOTAL_FAME

    def create_analysis(
        self,
        session: Session,
        battle_id: int,
        battle_data: BattleSummary,
        kill_events: Sequence[KillEvent],
    ) -> BattleAnalysis | None:
        """Analyse one battle, or return ``None`` when it can't be rated."""
        # 1. Eligibility floor
        if not is_eligible(
            battle_data.total_players, battle_data.total_fame, self.min_players, self.min_fame
        ):
            logger.debug(
                "Battle %d below eligibility floor (%d players, %d fame)",
                battle_id, battle_data.total_players, battle_data.total_fame,
            )
            return None

        # 2. Season
        season = season_service.resolve_season(session, battle_data.started_at)
        if season is None:
            logger.info("Battle %d: no season covers %s", battle_id, battle_data.started_at)
            return None

        prime_time = season_service.is_prime_time(session, season.id, battle_data.started_at)

        def mmr_lookup(stats: GuildBattleStats) -> tuple[str, float]:
            return _current_mmr(session, season.id, stats)

        return self.analyze(
            battle_id,
            battle_data,
            kill_events,
            season_id=season.id,
            is_prime_time=prime_time,
            mmr_lookup=mmr_lookup,
        )

    def analyze(
        self,
        battle_id: int,
        battle_data: BattleSummary,
        kill_events: Sequence[KillEvent],
        *,
        season_id: int,
        is_prime_time: bool = False,
        mmr_lookup: Callable[[GuildBattleStats], tuple[str, float]] | None = None,
        started_at: datetime | None = None,
    ) -> BattleAnalysis | None:
        """Steps 3–10 for an already-eligible battle in a known season.

        *mmr_lookup* maps a guild to ``(stable_guild_id, current_mmr)``;
        without one every guild keeps its provisional key at 1000 MMR.
        """
        if not is_eligible(
            battle_data.total_players, battle_data.total_fame, self.min_players, self.min_fame
        ):
            return None

        # 3 + 4. Stats and alliances
        all_stats = build_guild_stats(battle_data, kill_events)

        # 5. Significance filter
        significant, dropped = filter_significant(
            all_stats, battle_data.total_fame, battle_data.total_players, self.thresholds
        )
        if dropped:
            logger.info(
                "Battle %d: %d of %d guilds below participation threshold",
                battle_id, len(dropped), len(all_stats),
            )

        # 6. Need an opponent
        if len(significant) < 2:
            logger.info(
                "Battle %d: only %d significant guild(s), skipping", battle_id, len(significant)
            )
            return None

        # 7. Duration
        duration = battle_duration_minutes(kill_events)

        # 8. Clustering
        battle_clustering = kill_clustering_score(kill_events, duration)
        per_guild = guild_clustering_scores(kill_events, duration)
        for stats in significant:
            stats.kill_clustering = per_guild.get(stats.guild_name, 0.0)

        # 9. Friend groups (by name, remapped after step 10)
        groups_by_name = detect_friend_groups(significant, kill_events)

        # 10. MMR snapshot
        if mmr_lookup is not None:
            for stats in significant:
                stats.guild_id, stats.current_mmr = mmr_lookup(stats)

        key_by_name = {s.guild_name: s.guild_id for s in significant}
        return BattleAnalysis(
            battle_id=battle_id,
            season_id=season_id,
            started_at=started_at or battle_data.started_at,
            guild_stats=significant,
            total_players=battle_data.total_players,
            total_fame=battle_data.total_fame,
            battle_duration=duration,
            is_prime_time=is_prime_time,
            kill_clustering=battle_clustering,
            friend_groups=[[key_by_name[n] for n in group] for group in groups_by_name],
            guild_alliances={s.guild_id: s.alliance_name for s in significant},
        )


def _current_mmr(session: Session, season_id: int, stats: GuildBattleStats) -> tuple[str, float]:
    guild = guild_service.find_guild(session, stats.guild_id, stats.guild_name)
    if guild is None:
        return stats.guild_id, C.BASE_MMR
    mmr = session.scalar(
        select(GuildSeason.current_mmr).where(
            GuildSeason.guild_id == guild.id, GuildSeason.season_id == season_id
        )
    )
    return guild.id, mmr if mmr is not None else C.BASE_MMR
