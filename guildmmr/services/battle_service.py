"""
guildmmr.services.battle_service — Battle & kill-feed storage
===============================================================

Battles are written once and never edited afterwards, apart from the
``kills_fetched_at`` and ``rated_at`` stamps.  Kill events are append-only and keyed by the
upstream event id, so storing the same feed twice is harmless.

:func:`load_battle` rebuilds the validated API models from stored rows so
a battle can be re-rated without hitting the API again.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from guildmmr.database.engine import get_session
from guildmmr.database.models import Battle
from guildmmr.database.models import KillEvent as KillEventRow
from guildmmr.ingest.schemas import BattleSummary, KillEvent
from guildmmr.services.season_service import as_utc

logger = logging.getLogger(__name__)


def store_battle(engine: Engine, battle: BattleSummary) -> bool:
    """Insert *battle* if it is new.  Returns True when a row was written."""
    with get_session(engine) as session:
        if session.get(Battle, battle.albion_id) is not None:
            return False
        session.add(Battle(
            albion_id=battle.albion_id,
            started_at=battle.started_at,
            total_fame=battle.total_fame,
            total_kills=battle.total_kills,
            total_players=battle.total_players,
            alliances_json=[a.model_dump(mode="json") for a in battle.alliances],
            guilds_json=[g.model_dump(mode="json") for g in battle.guilds],
        ))
    logger.debug("Stored battle %d (%d players)", battle.albion_id, battle.total_players)
    return True


def store_kills(engine: Engine, battle_id: int, kills: Sequence[KillEvent]) -> int:
    """Append the kill feed of *battle_id* and stamp ``kills_fetched_at``.

    Events already stored are skipped.  Returns how many were new.
    """
    with get_session(engine) as session:
        battle = session.get(Battle, battle_id)
        if battle is None:
            raise ValueError(f"Battle {battle_id} not stored")

        ids = [k.event_id for k in kills]
        existing = set(session.scalars(
            select(KillEventRow.event_id).where(KillEventRow.event_id.in_(ids))
        ).all()) if ids else set()

        added = 0
        for kill in kills:
            if kill.event_id in existing:
                continue
            existing.add(kill.event_id)
            session.add(KillEventRow(
                event_id=kill.event_id,
                battle_albion_id=battle_id,
                timestamp=kill.timestamp,
                total_victim_kill_fame=kill.total_victim_kill_fame,
                killer_id=kill.killer.id,
                killer_name=kill.killer.name,
                killer_guild=kill.killer.guild_name,
                killer_alliance=kill.killer.alliance_name,
                killer_avg_ip=kill.killer.average_item_power,
                victim_id=kill.victim.id,
                victim_name=kill.victim.name,
                victim_guild=kill.victim.guild_name,
                victim_alliance=kill.victim.alliance_name,
                victim_avg_ip=kill.victim.average_item_power,
            ))
            added += 1
        battle.kills_fetched_at = datetime.now(UTC)

    logger.debug("Battle %d: stored %d new kill events", battle_id, added)
    return added


def load_battle(session: Session, battle_id: int) -> tuple[BattleSummary, list[KillEvent]] | None:
    """Stored battle and kill feed as API models, or None if unknown."""
    battle = session.get(Battle, battle_id)
    if battle is None:
        return None

    summary = BattleSummary.model_validate({
        "albion_id": battle.albion_id,
        "started_at": as_utc(battle.started_at),
        "total_fame": battle.total_fame,
        "total_kills": battle.total_kills,
        "total_players": battle.total_players,
        "alliances": battle.alliances_json or [],
        "guilds": battle.guilds_json or [],
    })

    rows = session.scalars(
        select(KillEventRow)
        .where(KillEventRow.battle_albion_id == battle_id)
        .order_by(KillEventRow.timestamp, KillEventRow.event_id)
    ).all()
    kills = [
        KillEvent.model_validate({
            "event_id": row.event_id,
            "timestamp": as_utc(row.timestamp),
            "total_victim_kill_fame": row.total_victim_kill_fame,
            "killer": {
                "id": row.killer_id,
                "name": row.killer_name,
                "guild_name": row.killer_guild,
                "alliance_name": row.killer_alliance,
                "average_item_power": row.killer_avg_ip,
            },
            "victim": {
                "id": row.victim_id,
                "name": row.victim_name,
                "guild_name": row.victim_guild,
                "alliance_name": row.victim_alliance,
                "average_item_power": row.victim_avg_ip,
            },
        })
        for row in rows
    ]
    return summary, kills


def mark_rated(engine: Engine, battle_id: int) -> None:
    """Stamp ``rated_at`` once every guild of *battle_id* has been processed."""
    with get_session(engine) as session:
        battle = session.get(Battle, battle_id)
        if battle is None:
            raise ValueError(f"Battle {battle_id} not stored")
        battle.rated_at = datetime.now(UTC)


def kills_fetched(session: Session, battle_id: int) -> bool:
    """True once the battle and its kill feed are both stored."""
    fetched_at = session.scalar(
        select(Battle.kills_fetched_at).where(Battle.albion_id == battle_id)
    )
    return fetched_at is not None


def is_rated(session: Session, battle_id: int) -> bool:
    """True once the rating pass over *battle_id* has finished."""
    rated_at = session.scalar(select(Battle.rated_at).where(Battle.albion_id == battle_id))
    return rated_at is not None
