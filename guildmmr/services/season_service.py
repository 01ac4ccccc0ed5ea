"""
guildmmr.services.season_service — Seasons, prime time & mass tracking
=======================================================================

* :func:`resolve_season` — which season a battle belongs to.  A plain query
  against the ``seasons`` table; nothing is cached, so tests can seed any
  season layout they like.
* :func:`is_prime_time` / :func:`find_prime_time_window` — global
  hour-of-day windows, including windows that wrap past midnight.
* :func:`update_mass` — running average of a guild's player count per
  prime-time window.
* Season lifecycle: create / activate / end, plus MMR carryover into the
  next season.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from guildmmr.constants import CARRYOVER_RATIO, carryover_mmr
from guildmmr.database.models import (
    GuildPrimeTimeMass,
    GuildSeason,
    PrimeTimeWindow,
    Season,
)

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Season lookup
# ---------------------------------------------------------------------------
def resolve_season(
    session: Session, timestamp: datetime, *, now: datetime | None = None
) -> Season | None:
    """Season whose ``[start_date, end_date)`` contains *timestamp*.

    An open-ended season ends at *now*, so future timestamps only resolve
    into seasons whose end date is already set.
    When ranges overlap the most recently started season wins.
    """
    ts = as_utc(timestamp)
    ends_after = Season.end_date > ts
    if ts <= as_utc(now or datetime.now(UTC)):
        ends_after = or_(Season.end_date.is_(None), ends_after)
    return session.scalar(
        select(Season)
        .where(Season.start_date <= ts, ends_after)
        .order_by(Season.start_date.desc())
        .limit(1)
    )


def get_active_season(session: Session) -> Season | None:
    return session.scalar(select(Season).where(Season.is_active.is_(True)))


def get_previous_season(session: Session, season_id: int) -> Season | None:
    """Season that started most recently before *season_id* did."""
    current = session.get(Season, season_id)
    if current is None:
        return None
    return session.scalar(
        select(Season)
        .where(Season.start_date < current.start_date)
        .order_by(Season.start_date.desc())
        .limit(1)
    )


# ---------------------------------------------------------------------------
# Season lifecycle
# ---------------------------------------------------------------------------
def create_season(
    session: Session,
    name: str,
    start_date: datetime,
    end_date: datetime | None = None,
) -> Season:
    """Create a season.  An open-ended season becomes the only active one.

    Raises
    ------
    ValueError
        If a season called *name* already exists.
    """
    if session.scalar(select(Season).where(Season.name == name)) is not None:
        raise ValueError(f"Season with name {name!r} already exists")

    if end_date is None:
        session.execute(update(Season).where(Season.is_active.is_(True)).values(is_active=False))

    season = Season(
        name=name, start_date=start_date, end_date=end_date, is_active=end_date is None
    )
    session.add(season)
    session.flush()
    logger.info("Created season %s (%r) starting %s", season.id, name, start_date)
    return season


def activate_season(session: Session, season_id: int) -> Season:
    season = session.get(Season, season_id)
    if season is None:
        raise ValueError(f"Season {season_id} not found")
    session.execute(update(Season).where(Season.is_active.is_(True)).values(is_active=False))
    season.is_active = True
    session.flush()
    logger.info("Activated season %s (%r)", season.id, season.name)
    return season


def end_season(
    session: Session,
    season_id: int,
    end_date: datetime,
    carryover_ratio: float = CARRYOVER_RATIO,
) -> Season:
    """Close *season_id* and record each guild's carryover MMR.

    A carryover failure is logged and rolled back on its own; the season
    still ends.
    """
    season = session.get(Season, season_id)
    if season is None:
        raise ValueError(f"Season {season_id} not found")
    season.end_date = end_date
    season.is_active = False
    session.flush()

    try:
        with session.begin_nested():
            count = process_season_end(session, season_id, carryover_ratio)
        logger.info("Season %s ended; carryover stored for %d guilds", season_id, count)
    except SQLAlchemyError:
        logger.exception("Carryover failed for ending season %s", season_id)
    return season


def process_season_end(
    session: Session, season_id: int, ratio: float = CARRYOVER_RATIO
) -> int:
    """Store ``carryover_mmr`` on every GuildSeason of *season_id*."""
    rows = session.scalars(select(GuildSeason).where(GuildSeason.season_id == season_id)).all()
    for row in rows:
        row.carryover_mmr = carryover_mmr(row.current_mmr, ratio)
    session.flush()
    return len(rows)


def initialize_new_season(
    session: Session,
    new_season_id: int,
    previous_season_id: int,
    ratio: float = CARRYOVER_RATIO,
) -> int:
    """Seed *new_season_id* with every guild's carryover from the previous season.

    Guilds that already have a record in the new season keep it.
    """
    if session.get(Season, new_season_id) is None:
        raise ValueError(f"New season {new_season_id} not found")
    if session.get(Season, previous_season_id) is None:
        raise ValueError(f"Previous season {previous_season_id} not found")

    previous = session.scalars(
        select(GuildSeason).where(GuildSeason.season_id == previous_season_id)
    ).all()
    existing = set(session.scalars(
        select(GuildSeason.guild_id).where(GuildSeason.season_id == new_season_id)
    ).all())

    created = 0
    for row in previous:
        if row.guild_id in existing:
            continue
        start = (
            row.carryover_mmr if row.carryover_mmr is not None
            else carryover_mmr(row.current_mmr, ratio)
        )
        session.add(GuildSeason(
            guild_id=row.guild_id,
            season_id=new_season_id,
            current_mmr=start,
            carryover_mmr=start,
        ))
        created += 1
    session.flush()
    logger.info(
        "Initialised season %s from season %s: %d guilds", new_season_id, previous_season_id,
        created,
    )
    return created


# ---------------------------------------------------------------------------
# Prime time
# ---------------------------------------------------------------------------
def add_prime_time_window(
    session: Session, start_hour: int, end_hour: int, timezone: str = "UTC"
) -> PrimeTimeWindow:
    if not (0 <= start_hour <= 23 and 0 <= end_hour <= 23):
        raise ValueError("Hours must be between 0 and 23")
    window = PrimeTimeWindow(start_hour=start_hour, end_hour=end_hour, timezone=timezone)
    session.add(window)
    session.flush()
    logger.info("Added prime time window %02d-%02d %s", start_hour, end_hour, timezone)
    return window


def remove_prime_time_window(session: Session, window_id: int) -> None:
    window = session.get(PrimeTimeWindow, window_id)
    if window is None:
        raise ValueError(f"Prime time window {window_id} not found")
    session.delete(window)
    session.flush()


def get_prime_time_windows(session: Session) -> list[PrimeTimeWindow]:
    return list(session.scalars(
        select(PrimeTimeWindow).order_by(PrimeTimeWindow.start_hour)
    ).all())


def find_prime_time_window(session: Session, timestamp: datetime) -> PrimeTimeWindow | None:
    """First configured window containing *timestamp*'s UTC hour, if any.

    A window's ``timezone`` is display metadata; hours are always UTC.
    """
    hour = as_utc(timestamp).hour
    for window in get_prime_time_windows(session):
        if window.contains_hour(hour):
            return window
    return None


def is_prime_time(session: Session, season_id: int, timestamp: datetime) -> bool:
    """True when *timestamp* falls inside any global prime-time window.

    Windows are global; *season_id* is accepted so callers can ask in the
    context of the season they are rating.
    """
    return find_prime_time_window(session, timestamp) is not None


def update_mass(
    engine: Engine,
    guild_season_id: int,
    player_count: int,
    battle_timestamp: datetime,
) -> GuildPrimeTimeMass | None:
    """Blend *player_count* into the guild's running average for the window
    containing *battle_timestamp*.  No-op outside prime time.

    ``new_avg = (old_avg * old_count + player_count) / (old_count + 1)``
    """
    with Session(engine, expire_on_commit=False) as session:
        window = find_prime_time_window(session, battle_timestamp)
        if window is None:
            return None

        mass = _get_mass(session, guild_season_id, window.id)
        if mass is None:
            try:
                with session.begin_nested():
                    mass = GuildPrimeTimeMass(
                        guild_season_id=guild_season_id,
                        prime_time_window_id=window.id,
                        avg_mass=0.0,
                        battle_count=0,
                    )
                    session.add(mass)
                    session.flush()
            except IntegrityError:
                mass = _get_mass(session, guild_season_id, window.id)
                if mass is None:
                    raise

        count = mass.battle_count or 0
        mass.avg_mass = ((mass.avg_mass or 0.0) * count + player_count) / (count + 1)
        mass.battle_count = count + 1
        session.commit()
        logger.debug(
            "Mass for guild season %d window %d → %.2f over %d battles",
            guild_season_id, window.id, mass.avg_mass, mass.battle_count,
        )
        return mass


def _get_mass(session: Session, guild_season_id: int, window_id: int) -> GuildPrimeTimeMass | None:
    return session.scalar(
        select(GuildPrimeTimeMass)
        .where(
            GuildPrimeTimeMass.guild_season_id == guild_season_id,
            GuildPrimeTimeMass.prime_time_window_id == window_id,
        )
        .with_for_update()
    )

