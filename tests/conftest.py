"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from guildmmr.database.models import Base
from guildmmr.ingest.schemas import BattleSummary, KillEvent

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all guildmmr tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Helpers shared by several test modules
# ---------------------------------------------------------------------------
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.run(coro)


BATTLE_START = datetime(2024, 3, 10, 20, 0, 0, tzinfo=UTC)


def make_kill(
    event_id: int,
    killer_guild: str | None,
    victim_guild: str | None,
    *,
    seconds: float = 0,
    fame: int = 100_000,
    killer_alliance: str | None = None,
    victim_alliance: str | None = None,
    killer_ip: float = 1200.0,
    victim_ip: float = 1200.0,
    start: datetime = BATTLE_START,
) -> KillEvent:
    """A validated kill event, *seconds* after *start*."""
    return KillEvent.model_validate({
        "EventId": event_id,
        "TimeStamp": (start + timedelta(seconds=seconds)).isoformat(),
        "TotalVictimKillFame": fame,
        "Killer": {
            "Id": f"k{event_id}",
            "Name": f"{killer_guild or 'solo'}-killer-{event_id}",
            "GuildName": killer_guild or "",
            "AllianceName": killer_alliance or "",
            "AverageItemPower": killer_ip,
        },
        "Victim": {
            "Id": f"v{event_id}",
            "Name": f"{victim_guild or 'solo'}-victim-{event_id}",
            "GuildName": victim_guild or "",
            "AllianceName": victim_alliance or "",
            "AverageItemPower": victim_ip,
        },
    })


def make_battle(
    albion_id: int,
    guilds: list[dict],
    *,
    total_players: int | None = None,
    total_fame: int | None = None,
    started_at: datetime = BATTLE_START,
) -> BattleSummary:
    """A validated battle summary.  *guilds* use the upstream camelCase keys."""
    return BattleSummary.model_validate({
        "albionId": albion_id,
        "startedAt": started_at.isoformat(),
        "totalFame": total_fame if total_fame is not None else sum(
            g.get("killFame", 0) for g in guilds
        ),
        "totalKills": sum(g.get("kills", 0) for g in guilds),
        "totalPlayers": total_players if total_players is not None else sum(
            g.get("players", 0) for g in guilds
        ),
        "guilds": guilds,
    })


def two_guild_battle(
    albion_id: int = 1001, started_at: datetime = BATTLE_START
) -> tuple[BattleSummary, list[KillEvent]]:
    """A (20 players, 15 kills, 2 deaths, alliance X) vs B (10, 2, 15, Y).

    30 players and 3,000,000 fame in total; every kill is worth 100k fame.
    """
    battle = make_battle(
        albion_id,
        [
            {"id": "guild-a", "name": "Alpha", "alliance": "X", "kills": 15, "deaths": 2,
             "killFame": 1_500_000, "players": 20, "ip": 1250},
            {"id": "guild-b", "name": "Bravo", "alliance": "Y", "kills": 2, "deaths": 15,
             "killFame": 200_000, "players": 10, "ip": 1250},
        ],
        total_players=30,
        total_fame=3_000_000,
        started_at=started_at,
    )
    base = albion_id * 100
    kills = [
        make_kill(base + i, "Alpha", "Bravo", seconds=i * 10,
                  killer_alliance="X", victim_alliance="Y", start=started_at)
        for i in range(15)
    ] + [
        make_kill(base + 15 + i, "Bravo", "Alpha", seconds=5 + i * 20,
                  killer_alliance="Y", victim_alliance="X", start=started_at)
        for i in range(2)
    ]
    return battle, kills
