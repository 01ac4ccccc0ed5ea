"""
guildmmr.services.crawl_service — Battleboard crawl loop
=========================================================

One crawl pass walks the newest battle pages until it reaches a page with
nothing new, and for every unseen battle:

    fetch kills → store battle → store kills → resolve guild ids → rate

All database work goes through :func:`~guildmmr.database.engine.run_db`
so the event loop keeps serving API calls while a battle is rated.

A battle is only considered seen once it has been rated (``rated_at``).
If the kill fetch or the rating fails the battle is retried on the next
pass; a kill feed that was already stored is read back instead of being
fetched again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from guildmmr.database.engine import run_db
from guildmmr.ingest.errors import AlbionAPIError
from guildmmr.services import battle_service, guild_service, rating_service

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from guildmmr.config import GuildMmrConfig
    from guildmmr.engine.cache import SettingsCache
    from guildmmr.ingest.client import AlbionClient
    from guildmmr.ingest.schemas import BattleSummary, KillEvent

logger = logging.getLogger(__name__)


def _battle_state(engine: Engine, battle_id: int) -> tuple[bool, list[KillEvent] | None]:
    """``(rated, stored_kills)``; stored_kills is None until the feed is stored."""
    with Session(engine) as session:
        if battle_service.is_rated(session, battle_id):
            return True, None
        if not battle_service.kills_fetched(session, battle_id):
            return False, None
        loaded = battle_service.load_battle(session, battle_id)
        return False, loaded[1] if loaded else None


async def _resolve_unnamed_ids(
    engine: Engine, client: AlbionClient, battle: BattleSummary
) -> None:
    """Look up ids for summary guilds reported by name only."""
    for guild in battle.guilds:
        if guild.id or not guild.name:
            continue
        try:
            await guild_service.resolve_guild_by_name(engine, client, guild.name)
        except AlbionAPIError as exc:
            logger.warning("Guild search for %r failed: %s", guild.name, exc)


async def ingest_battle(
    engine: Engine,
    client: AlbionClient,
    battle: BattleSummary,
    cache: SettingsCache | None = None,
) -> dict[str, int] | None:
    """Fetch, store and rate one battle.  None when it was already known."""
    rated, kills = await run_db(_battle_state, engine, battle.albion_id)
    if rated:
        return None

    if kills is None:
        kills = await client.fetch_kills(battle.albion_id)
        await run_db(battle_service.store_battle, engine, battle)
        await run_db(battle_service.store_kills, engine, battle.albion_id, kills)

    await _resolve_unnamed_ids(engine, client, battle)
    summary = await run_db(
        rating_service.process_battle, engine, battle.albion_id, battle, kills, cache
    )
    await run_db(battle_service.mark_rated, engine, battle.albion_id)
    return summary


async def crawl_once(
    engine: Engine,
    client: AlbionClient,
    cfg: GuildMmrConfig,
    cache: SettingsCache | None = None,
) -> dict[str, int]:
    """One pass over the newest battle pages.  Returns per-pass counters."""
    totals = {"battles": 0, "rated_guilds": 0, "skipped": 0, "failed": 0}

    for page in range(cfg.max_pages_per_crawl):
        battles = await client.fetch_battles_page(page, cfg.min_players)
        if not battles:
            break

        new_on_page = 0
        for battle in battles:
            try:
                summary = await ingest_battle(engine, client, battle, cache)
            except AlbionAPIError as exc:
                totals["failed"] += 1
                logger.warning("Battle %d not ingested: %s", battle.albion_id, exc)
                continue
            except SQLAlchemyError:
                totals["failed"] += 1
                logger.exception("Battle %d not rated; retrying next pass", battle.albion_id)
                continue
            if summary is None:
                continue
            new_on_page += 1
            totals["battles"] += 1
            totals["rated_guilds"] += summary["processed"]
            totals["skipped"] += summary["skipped"]

        if new_on_page == 0:
            break

    logger.info(
        "Crawl pass: %d new battles, %d guild ratings, %d skipped, %d failed",
        totals["battles"], totals["rated_guilds"], totals["skipped"], totals["failed"],
    )
    return totals


def next_interval(client: AlbionClient, cfg: GuildMmrConfig) -> float:
    """Seconds until the next pass, stretched while the API is pushing back."""
    interval = float(cfg.crawl_interval_sec)
    if client.should_slow_down():
        interval *= cfg.slow_down_multiplier
        logger.warning("Upstream rate limiting detected; next crawl in %.0fs", interval)
    return interval


async def run_forever(
    engine: Engine,
    client: AlbionClient,
    cfg: GuildMmrConfig,
    cache: SettingsCache | None = None,
) -> None:
    """Crawl until cancelled.  A failed page fetch or database outage only costs one pass."""
    while True:
        try:
            await crawl_once(engine, client, cfg, cache)
        except AlbionAPIError as exc:
            logger.error("Crawl pass aborted: %s", exc)
        except SQLAlchemyError:
            logger.exception("Crawl pass aborted by a database error")
        await asyncio.sleep(next_interval(client, cfg))
