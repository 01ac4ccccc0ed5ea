"""
guildmmr.services.guild_service — Guild identity resolution
============================================================

Kill events name guilds but don't identify them, and battle summaries
sometimes omit the id.  Every downstream table keys guilds by one stable
string, resolved here with a single merge rule:

    find by id  →  else find by name  →  else create

A guild first seen by name only is stored under ``placeholder:<name>``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from guildmmr.database.engine import run_db
from guildmmr.database.models import Guild

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from guildmmr.ingest.client import AlbionClient

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "placeholder:"


def guild_key(guild_id: str | None, name: str) -> str:
    """Provisional key for a guild before it has been looked up."""
    return guild_id if guild_id else f"{PLACEHOLDER_PREFIX}{name}"


def is_placeholder(guild_id: str) -> bool:
    return guild_id.startswith(PLACEHOLDER_PREFIX)


def find_guild(session: Session, guild_id: str | None, name: str | None) -> Guild | None:
    """Look a guild up by id, then by name.  Read-only."""
    if guild_id and not is_placeholder(guild_id):
        guild = session.get(Guild, guild_id)
        if guild is not None:
            return guild
    if name:
        return session.scalar(select(Guild).where(Guild.name == name))
    return None


def resolve_guild(session: Session, guild_id: str | None, name: str) -> Guild:
    """Return the stable :class:`Guild` for *guild_id* / *name*, creating it if new.

    A guild found by id under a different name is renamed.  Concurrent
    creation of the same guild is absorbed: the losing insert rolls back
    its SAVEPOINT and re-reads the winner's row.
    """
    guild = find_guild(session, guild_id, name)
    if guild is not None:
        if guild.name != name and guild_id and guild.id == guild_id:
            clash = session.scalar(select(Guild).where(Guild.name == name))
            if clash is None:
                logger.info("Guild %s renamed %r → %r", guild.id, guild.name, name)
                guild.name = name
        elif guild_id and guild.id != guild_id and not is_placeholder(guild_id):
            logger.warning(
                "Guild %r already stored as %s; ignoring id %s", name, guild.id, guild_id
            )
        return guild

    guild = Guild(id=guild_key(guild_id, name), name=name)
    try:
        with session.begin_nested():
            session.add(guild)
            session.flush()
    except IntegrityError:
        existing = find_guild(session, guild_id, name)
        if existing is None:
            raise
        logger.info("Guild %r created concurrently, using existing row", name)
        return existing
    logger.info("Created guild %s (%s)", guild.id, name)
    return guild


async def resolve_guild_by_name(engine: Engine, client: AlbionClient, name: str) -> Guild:
    """Resolve a guild known only by *name*, asking the API for its id.

    Prefers an exact (case-sensitive) search match, then the first result.
    With no results the guild is stored under a placeholder key.
    """

    def _lookup() -> Guild | None:
        with Session(engine, expire_on_commit=False) as session:
            return find_guild(session, None, name)

    existing = await run_db(_lookup)
    if existing is not None:
        return existing

    results = await client.search_guilds(name)
    guild_id: str | None = None
    exact = next((r for r in results if r.name == name), None)
    if exact is not None:
        guild_id = exact.id
    elif results:
        logger.warning(
            "No exact match for guild %r; using %r (%s)", name, results[0].name, results[0].id
        )
        guild_id = results[0].id
    else:
        logger.warning("Guild %r not found upstream; storing placeholder", name)

    def _create() -> Guild:
        with Session(engine, expire_on_commit=False) as session:
            guild = resolve_guild(session, guild_id, name)
            session.commit()
            return guild

    return await run_db(_create)
