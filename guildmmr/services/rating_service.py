"""
guildmmr.services.rating_service — Battle → MMR persistence
=============================================================

Glue between the pure engines and the database:

1. :func:`process_battle` analyses a stored battle, looks up each guild's
   recent wins, runs :func:`~guildmmr.engine.rating.calculate_deltas` and
   hands every result to :func:`apply_delta`.
2. :func:`apply_delta` claims the ``(battle, season, guild)`` triple by
   inserting the calculation log row, then mutates the GuildSeason in the
   same transaction.  A second attempt for the same triple is a no-op.
3. Prime-time mass is updated after commit and never rolls the rating back.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from guildmmr import constants as C
from guildmmr.database.models import GuildSeason, MmrCalculationLog
from guildmmr.engine.analysis import BattleAnalysisEngine
from guildmmr.engine.rating import calculate_deltas
from guildmmr.services import guild_service, season_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from guildmmr.engine.cache import SettingsCache
    from guildmmr.engine.rating import DeltaResult
    from guildmmr.engine.stats import BattleAnalysis, GuildBattleStats
    from guildmmr.ingest.schemas import BattleSummary, KillEvent

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def get_or_create_guild_season(session: Session, guild_id: str, season_id: int) -> GuildSeason:
    """Fetch the GuildSeason row for update, creating it at baseline MMR."""
    row = session.scalar(
        select(GuildSeason)
        .where(GuildSeason.guild_id == guild_id, GuildSeason.season_id == season_id)
        .with_for_update()
    )
    if row is not None:
        return row

    row = GuildSeason(guild_id=guild_id, season_id=season_id, current_mmr=C.BASE_MMR)
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
    except IntegrityError:
        row = session.scalar(
            select(GuildSeason)
            .where(GuildSeason.guild_id == guild_id, GuildSeason.season_id == season_id)
            .with_for_update()
        )
        if row is None:
            raise
    return row


def count_recent_wins(
    session: Session,
    guild_id: str,
    season_id: int,
    enemy_ids: Iterable[str],
    before: datetime,
    lookback_days: int = C.ANTI_FARMING_LOOKBACK_DAYS,
) -> dict[str, int]:
    """Wins logged by *guild_id* against each of *enemy_ids* in the lookback.

    The window is ``[before - lookback_days, before)`` on the battles' own
    start times, so reprocessing old battles sees the history they had.
    """
    enemies = set(enemy_ids)
    if not enemies:
        return {}
    since = before - timedelta(days=lookback_days)
    rows = session.scalars(
        select(MmrCalculationLog.opponent_guilds).where(
            MmrCalculationLog.guild_id == guild_id,
            MmrCalculationLog.season_id == season_id,
            MmrCalculationLog.is_win.is_(True),
            MmrCalculationLog.battle_started_at >= since,
            MmrCalculationLog.battle_started_at < before,
        )
    ).all()

    counts: dict[str, int] = {}
    for opponents in rows:
        for enemy in enemies.intersection(opponents or ()):
            counts[enemy] = counts.get(enemy, 0) + 1
    return counts


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
def apply_delta(
    engine: Engine,
    guild_id: str,
    season_id: int,
    result: DeltaResult,
    stats: GuildBattleStats,
    analysis: BattleAnalysis,
) -> bool:
    """Persist *result* for one guild.

    Returns True when applied, False when the triple was already processed
    (nothing is changed in that case).
    """
    with Session(engine) as session:
        guild = guild_service.resolve_guild(session, guild_id, stats.guild_name)
        guild_season = get_or_create_guild_season(session, guild.id, season_id)
        previous = guild_season.current_mmr
        new_mmr = max(0.0, previous + result.delta)

        log = MmrCalculationLog(
            battle_id=analysis.battle_id,
            season_id=season_id,
            guild_id=guild.id,
            battle_started_at=analysis.started_at,
            previous_mmr=previous,
            mmr_change=result.delta,
            new_mmr=new_mmr,
            original_mmr_change=result.original_delta,
            anti_farming_factor=result.anti_farming_factor,
            is_win=result.is_win,
            is_prime_time=analysis.is_prime_time,
            kills=stats.kills,
            deaths=stats.deaths,
            fame_gained=stats.fame_gained,
            fame_lost=stats.fame_lost,
            players=stats.players,
            avg_ip=stats.avg_ip,
            alliance_name=stats.alliance_name,
            factors=result.factors,
            opponent_guilds=result.opponents,
            opponent_mmrs=result.opponent_mmrs,
            k_factor=result.k_factor,
            calculation_version=C.CALCULATION_VERSION,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(log)
                session.flush()
        except IntegrityError:
            # Already rated.  The SAVEPOINT rolled back; keep the guild rows.
            session.commit()
            logger.info(
                "Battle %d already processed for guild %s in season %d",
                analysis.battle_id, guild.id, season_id,
            )
            return False

        guild_season.current_mmr = new_mmr

        guild_season.total_battles += 1
        guild_season.mmr_battles += 1
        if result.is_win:
            guild_season.wins += 1
            guild_season.mmr_wins += 1
        elif result.factors["win_loss"]["value"] < 0:
            guild_season.losses += 1
            guild_season.mmr_losses += 1
        guild_season.total_fame_gained += stats.fame_gained
        guild_season.total_fame_lost += stats.fame_lost
        guild_season.mmr_fame_gained += stats.fame_gained
        guild_season.mmr_fame_lost += stats.fame_lost
        if analysis.is_prime_time:
            guild_season.prime_time_battles += 1
            guild_season.mmr_prime_time_battles += 1
        guild_season.last_battle_at = analysis.started_at
        guild_season.last_mmr_battle_at = analysis.started_at

        guild_season_id = guild_season.id
        session.commit()

    logger.info(
        "Battle %d: %s %.1f → %.1f (%+.2f)",
        analysis.battle_id, stats.guild_name, previous, new_mmr, result.delta,
    )

    if analysis.is_prime_time:
        try:
            season_service.update_mass(
                engine, guild_season_id, stats.players, analysis.started_at
            )
        except Exception:
            logger.exception(
                "Prime-time mass update failed for guild season %d", guild_season_id
            )
    return True


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------
def process_battle(
    engine: Engine,
    battle_id: int,
    battle_data: BattleSummary,
    kill_events: Sequence[KillEvent],
    cache: SettingsCache | None = None,
    analysis_engine: BattleAnalysisEngine | None = None,
) -> dict[str, int]:
    """Analyse and rate one battle.

    Returns counts of guilds ``processed`` and ``duplicates``; ``skipped``
    is 1 when the battle produced no analysis.
    """
    summary = {"processed": 0, "duplicates": 0, "skipped": 0}
    analysis_engine = analysis_engine or BattleAnalysisEngine(cache)
    lookback = (
        cache.get_int("rating.anti_farming_lookback_days", C.ANTI_FARMING_LOOKBACK_DAYS)
        if cache is not None else C.ANTI_FARMING_LOOKBACK_DAYS
    )

    with Session(engine) as session:
        analysis = analysis_engine.create_analysis(session, battle_id, battle_data, kill_events)
        if analysis is None:
            summary["skipped"] = 1
            return summary

        history = {
            stats.guild_id: count_recent_wins(
                session,
                stats.guild_id,
                analysis.season_id,
                [e.guild_id for e in analysis.enemies_of(stats)],
                season_service.as_utc(analysis.started_at),
                lookback,
            )
            for stats in analysis.guild_stats
        }

    results = calculate_deltas(analysis, history, cache)
    for stats in analysis.guild_stats:
        applied = apply_delta(
            engine, stats.guild_id, analysis.season_id, results[stats.guild_id], stats, analysis
        )
        summary["processed" if applied else "duplicates"] += 1

    logger.info(
        "Battle %d rated: %d guilds, %d duplicates",
        battle_id, summary["processed"], summary["duplicates"],
    )
    return summary
