"""
guildmmr.ingest.schemas — Battleboard API response models
==========================================================

Every response is parsed through one of these models before it enters the
pipeline.  The upstream JSON is camelCase for battles and PascalCase for
kill events; Python attributes are snake_case with validation aliases.
Unknown keys are ignored so additive upstream changes don't break ingestion.

Empty alliance strings are normalised to ``None``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter


def _blank_to_none(value: object) -> object:
    if isinstance(value, str) and not value.strip():
        return None
    return value


OptionalName = Annotated[str | None, BeforeValidator(_blank_to_none)]


class _UpstreamModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Battles
# ---------------------------------------------------------------------------
class BattleAlliance(_UpstreamModel):
    id: str | None = Field(default=None, validation_alias=AliasChoices("albionId", "id"))
    name: str | None = None
    tag: str | None = None
    kills: int = Field(default=0, ge=0)
    deaths: int = Field(default=0, ge=0)
    kill_fame: int = Field(default=0, ge=0, alias="killFame")
    death_fame: int = Field(default=0, ge=0, alias="deathFame")
    players: int = Field(default=0, ge=0)
    ip: float | None = Field(default=None, ge=0)


class BattleGuild(_UpstreamModel):
    """Per-guild summary as reported by the battle list and detail endpoints."""

    id: str | None = Field(default=None, validation_alias=AliasChoices("albionId", "id"))
    name: str | None = None
    alliance: OptionalName = None
    kills: int = Field(default=0, ge=0)
    deaths: int = Field(default=0, ge=0)
    kill_fame: int = Field(default=0, ge=0, alias="killFame")
    death_fame: int = Field(default=0, ge=0, alias="deathFame")
    players: int = Field(default=0, ge=0)
    ip: float | None = Field(default=None, ge=0)


class BattlePlayer(_UpstreamModel):
    name: str = Field(max_length=48)
    guild_name: OptionalName = Field(default=None, alias="guildName")
    alliance_name: OptionalName = Field(default=None, alias="allianceName")
    kills: int = Field(default=0, ge=0)
    deaths: int = Field(default=0, ge=0)
    kill_fame: int = Field(default=0, ge=0, alias="killFame")
    death_fame: int = Field(default=0, ge=0, alias="deathFame")
    ip: float = Field(default=0.0, ge=0)


class BattleSummary(_UpstreamModel):
    """One entry of ``GET /battles``."""

    albion_id: int = Field(alias="albionId")
    started_at: datetime = Field(alias="startedAt")
    total_fame: int = Field(ge=0, alias="totalFame")
    total_kills: int = Field(ge=0, alias="totalKills")
    total_players: int = Field(gt=0, alias="totalPlayers")
    alliances: list[BattleAlliance] = Field(default_factory=list)
    guilds: list[BattleGuild] = Field(default_factory=list)


class BattleDetail(BattleSummary):
    """``GET /battles/{id}`` — the summary plus per-player rows."""

    finished_at: datetime | None = Field(default=None, alias="finishedAt")
    players: list[BattlePlayer] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Kill events
# ---------------------------------------------------------------------------
class KillParticipant(_UpstreamModel):
    id: str = Field(alias="Id")
    name: str = Field(max_length=48, alias="Name")
    guild_name: OptionalName = Field(default=None, alias="GuildName")
    alliance_name: OptionalName = Field(default=None, alias="AllianceName")
    average_item_power: float = Field(default=0.0, ge=0, alias="AverageItemPower")


class KillEvent(_UpstreamModel):
    """One entry of ``GET /battles/kills?ids={id}``."""

    event_id: int = Field(alias="EventId")
    timestamp: datetime = Field(alias="TimeStamp")
    total_victim_kill_fame: int = Field(ge=0, alias="TotalVictimKillFame")
    killer: KillParticipant = Field(alias="Killer")
    victim: KillParticipant = Field(alias="Victim")


# ---------------------------------------------------------------------------
# Guild search
# ---------------------------------------------------------------------------
class GuildSearchResult(_UpstreamModel):
    id: str = Field(alias="Id")
    name: str = Field(alias="Name")


BattleListAdapter = TypeAdapter(list[BattleSummary])
KillListAdapter = TypeAdapter(list[KillEvent])
GuildSearchAdapter = TypeAdapter(list[GuildSearchResult])
