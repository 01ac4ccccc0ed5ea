"""
guildmmr.database.models — SQLAlchemy 2.0 Data Models
======================================================

Tables:
- guilds                 — Guild identity (external id PK, unique name)
- seasons                — Competitive windows, at most one active
- prime_time_windows     — Global hour-of-day ranges (may wrap midnight)
- battles                — Raw battle summaries from the battleboard API
- kill_events            — Append-only kill feed, one battle each
- guild_seasons          — Durable MMR record per (guild, season)
- guild_prime_time_mass  — Running average player count per window
- mmr_calculation_logs   — Immutable audit row per (battle, season, guild)
- settings               — Key/value tunables for the rating engine
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from guildmmr.constants import BASE_MMR


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all guildmmr ORM models."""


# ---------------------------------------------------------------------------
# Guilds — created lazily on first observation
# ---------------------------------------------------------------------------
class Guild(Base):
    __tablename__ = "guilds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    seasons: Mapped[list[GuildSeason]] = relationship(
        back_populates="guild", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Guild id={self.id!r} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Seasons
# ---------------------------------------------------------------------------
class Season(Base):
    __tablename__ = "seasons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_seasons_start_date", "start_date"),
    )

    def __repr__(self) -> str:
        return f"<Season id={self.id} name={self.name!r} active={self.is_active}>"


class PrimeTimeWindow(Base):
    """Global hour-of-day window.  ``end_hour < start_hour`` wraps midnight."""
    __tablename__ = "prime_time_windows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    start_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    end_hour: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), nullable=False, default="UTC")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def contains_hour(self, hour: int) -> bool:
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    def __repr__(self) -> str:
        return f"<PrimeTimeWindow id={self.id} {self.start_hour:02d}-{self.end_hour:02d}>"


# ---------------------------------------------------------------------------
# Battles & kill events — raw upstream data
# ---------------------------------------------------------------------------
class Battle(Base):
    __tablename__ = "battles"

    albion_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_fame: Mapped[int] = mapped_column(BigInteger, default=0)
    total_kills: Mapped[int] = mapped_column(Integer, default=0)
    total_players: Mapped[int] = mapped_column(Integer, default=0)
    alliances_json: Mapped[list] = mapped_column(JSONB, default=list)
    guilds_json: Mapped[list] = mapped_column(JSONB, default=list)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    kills_fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    rated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    kills: Mapped[list[KillEvent]] = relationship(
        back_populates="battle", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_battles_started_at", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Battle albion_id={self.albion_id} players={self.total_players} "
            f"fame={self.total_fame}>"
        )


class KillEvent(Base):
    __tablename__ = "kill_events"

    event_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    battle_albion_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("battles.albion_id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_victim_kill_fame: Mapped[int] = mapped_column(BigInteger, default=0)

    killer_id: Mapped[str] = mapped_column(String(64), default="")
    killer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    killer_guild: Mapped[str | None] = mapped_column(String(100), default=None)
    killer_alliance: Mapped[str | None] = mapped_column(String(100), default=None)
    killer_avg_ip: Mapped[float] = mapped_column(Float, default=0.0)

    victim_id: Mapped[str] = mapped_column(String(64), default="")
    victim_name: Mapped[str] = mapped_column(String(100), nullable=False)
    victim_guild: Mapped[str | None] = mapped_column(String(100), default=None)
    victim_alliance: Mapped[str | None] = mapped_column(String(100), default=None)
    victim_avg_ip: Mapped[float] = mapped_column(Float, default=0.0)

    battle: Mapped[Battle] = relationship(back_populates="kills")

    __table_args__ = (
        Index("ix_kill_events_battle_ts", "battle_albion_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<KillEvent id={self.event_id} {self.killer_name!r}→{self.victim_name!r} "
            f"fame={self.total_victim_kill_fame}>"
        )


# ---------------------------------------------------------------------------
# GuildSeason — the durable rating record
# ---------------------------------------------------------------------------
class GuildSeason(Base):
    __tablename__ = "guild_seasons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    season_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("seasons.id", ondelete="CASCADE"), nullable=False
    )
    current_mmr: Mapped[float] = mapped_column(Float, default=BASE_MMR)
    carryover_mmr: Mapped[float | None] = mapped_column(Float, default=None)

    # All battles the guild significantly took part in
    total_battles: Mapped[int] = mapped_column(Integer, default=0)
    wins: Mapped[int] = mapped_column(Integer, default=0)
    losses: Mapped[int] = mapped_column(Integer, default=0)
    total_fame_gained: Mapped[int] = mapped_column(BigInteger, default=0)
    total_fame_lost: Mapped[int] = mapped_column(BigInteger, default=0)
    prime_time_battles: Mapped[int] = mapped_column(Integer, default=0)

    # MMR-eligible battles only
    mmr_battles: Mapped[int] = mapped_column(Integer, default=0)
    mmr_wins: Mapped[int] = mapped_column(Integer, default=0)
    mmr_losses: Mapped[int] = mapped_column(Integer, default=0)
    mmr_fame_gained: Mapped[int] = mapped_column(BigInteger, default=0)
    mmr_fame_lost: Mapped[int] = mapped_column(BigInteger, default=0)
    mmr_prime_time_battles: Mapped[int] = mapped_column(Integer, default=0)

    last_battle_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_mmr_battle_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    guild: Mapped[Guild] = relationship(back_populates="seasons")
    prime_time_masses: Mapped[list[GuildPrimeTimeMass]] = relationship(
        back_populates="guild_season", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("guild_id", "season_id", name="uq_guild_seasons_guild_season"),
        Index("ix_guild_seasons_season_mmr", "season_id", "current_mmr"),
    )

    def __repr__(self) -> str:
        return (
            f"<GuildSeason guild={self.guild_id!r} season={self.season_id} "
            f"mmr={self.current_mmr:.1f}>"
        )


class GuildPrimeTimeMass(Base):
    __tablename__ = "guild_prime_time_mass"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_season_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("guild_seasons.id", ondelete="CASCADE"), nullable=False
    )
    prime_time_window_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("prime_time_windows.id", ondelete="CASCADE"), nullable=False
    )
    avg_mass: Mapped[float] = mapped_column(Float, default=0.0)
    battle_count: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    guild_season: Mapped[GuildSeason] = relationship(back_populates="prime_time_masses")

    __table_args__ = (
        UniqueConstraint(
            "guild_season_id", "prime_time_window_id", name="uq_prime_time_mass_window"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<GuildPrimeTimeMass gs={self.guild_season_id} window={self.prime_time_window_id} "
            f"avg={self.avg_mass:.1f} n={self.battle_count}>"
        )


# ---------------------------------------------------------------------------
# MmrCalculationLog — audit trail + duplicate-processing guard
# ---------------------------------------------------------------------------
class MmrCalculationLog(Base):
    """One immutable row per (battle, season, guild) MMR computation.

    The unique constraint on the triple is the only thing that stops a
    battle from being rated twice for the same guild.
    """
    __tablename__ = "mmr_calculation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    battle_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    season_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("seasons.id", ondelete="CASCADE"), nullable=False
    )
    guild_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    battle_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    previous_mmr: Mapped[float] = mapped_column(Float, nullable=False)
    mmr_change: Mapped[float] = mapped_column(Float, nullable=False)
    new_mmr: Mapped[float] = mapped_column(Float, nullable=False)
    original_mmr_change: Mapped[float | None] = mapped_column(Float, default=None)
    anti_farming_factor: Mapped[float | None] = mapped_column(Float, default=None)

    is_win: Mapped[bool] = mapped_column(Boolean, default=False)
    is_prime_time: Mapped[bool] = mapped_column(Boolean, default=False)
    kills: Mapped[int] = mapped_column(Integer, default=0)
    deaths: Mapped[int] = mapped_column(Integer, default=0)
    fame_gained: Mapped[int] = mapped_column(BigInteger, default=0)
    fame_lost: Mapped[int] = mapped_column(BigInteger, default=0)
    players: Mapped[int] = mapped_column(Integer, default=0)
    avg_ip: Mapped[float] = mapped_column(Float, default=0.0)
    alliance_name: Mapped[str | None] = mapped_column(String(100), default=None)

    # {factor_name: {"value": v, "weight": w, "weighted": v * w}}
    factors: Mapped[dict] = mapped_column(JSONB, default=dict)
    opponent_guilds: Mapped[list] = mapped_column(JSONB, default=list)
    opponent_mmrs: Mapped[list] = mapped_column(JSONB, default=list)

    k_factor: Mapped[float] = mapped_column(Float, default=0.0)
    calculation_version: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "battle_id", "season_id", "guild_id", name="uq_mmr_log_battle_season_guild"
        ),
        Index("ix_mmr_log_guild_season_started", "guild_id", "season_id", "battle_started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<MmrCalculationLog battle={self.battle_id} guild={self.guild_id!r} "
            f"delta={self.mmr_change:+.2f}>"
        )


# ---------------------------------------------------------------------------
# Settings — tunables for analysis and rating
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value tunables store.

    Significance thresholds, K-factor shaping and farming penalties live here
    so operators can rebalance without redeploying.  Values are stored as
    JSON strings; typed accessors live in
    :class:`~guildmmr.engine.cache.SettingsCache`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
