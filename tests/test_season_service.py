"""
tests/test_season_service.py — Seasons, prime time and mass
============================================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from guildmmr.database.models import Guild, GuildPrimeTimeMass, GuildSeason
from guildmmr.services import season_service


def _dt(*args):
    return datetime(*args, tzinfo=UTC)


class TestResolveSeason:
    """Which season a battle belongs to."""

    def test_no_seasons(self, db_session):
        assert season_service.resolve_season(db_session, _dt(2024, 3, 1)) is None

    def test_closed_and_open_ranges(self, db_session):
        s1 = season_service.create_season(db_session, "S1", _dt(2024, 1, 1), _dt(2024, 2, 1))
        s2 = season_service.create_season(db_session, "S2", _dt(2024, 2, 1))
        db_session.commit()

        assert season_service.resolve_season(db_session, _dt(2024, 1, 15)).id == s1.id
        # end_date is exclusive
        assert season_service.resolve_season(db_session, _dt(2024, 2, 1)).id == s2.id
        assert season_service.resolve_season(db_session, _dt(2023, 12, 31)) is None

    def test_future_timestamp_never_resolves(self, db_session):
        season_service.create_season(db_session, "S1", _dt(2024, 1, 1))
        db_session.commit()
        now = _dt(2024, 6, 1)
        assert season_service.resolve_season(db_session, _dt(2024, 5, 31), now=now) is not None
        assert season_service.resolve_season(db_session, _dt(2024, 6, 2), now=now) is None

    def test_future_timestamp_in_closed_season(self, db_session):
        """A scheduled end date still bounds timestamps later than now."""
        season = season_service.create_season(db_session, "S1", _dt(2024, 1, 1), _dt(2024, 9, 1))
        db_session.commit()
        now = _dt(2024, 6, 1)
        found = season_service.resolve_season(db_session, _dt(2024, 7, 15), now=now)
        assert found is not None
        assert found.id == season.id
        assert season_service.resolve_season(db_session, _dt(2024, 9, 2), now=now) is None

    def test_naive_timestamp_treated_as_utc(self, db_session):
        season_service.create_season(db_session, "S1", _dt(2024, 1, 1))
        db_session.commit()
        assert season_service.resolve_season(db_session, datetime(2024, 3, 1)) is not None


class TestSeasonLifecycle:
    """Create / activate / end / carry over."""

    def test_duplicate_name_rejected(self, db_session):
        season_service.create_season(db_session, "S1", _dt(2024, 1, 1))
        with pytest.raises(ValueError, match="already exists"):
            season_service.create_season(db_session, "S1", _dt(2024, 5, 1))

    def test_only_one_open_season_active(self, db_session):
        s1 = season_service.create_season(db_session, "S1", _dt(2024, 1, 1))
        s2 = season_service.create_season(db_session, "S2", _dt(2024, 5, 1))
        db_session.commit()
        db_session.refresh(s1)
        assert not s1.is_active
        assert s2.is_active
        assert season_service.get_active_season(db_session).id == s2.id

    def test_activate_unknown_season(self, db_session):
        with pytest.raises(ValueError):
            season_service.activate_season(db_session, 999)

    def test_previous_season(self, db_session):
        s1 = season_service.create_season(db_session, "S1", _dt(2024, 1, 1), _dt(2024, 5, 1))
        s2 = season_service.create_season(db_session, "S2", _dt(2024, 5, 1))
        assert season_service.get_previous_season(db_session, s2.id).id == s1.id
        assert season_service.get_previous_season(db_session, s1.id) is None

    def test_end_season_stores_carryover(self, db_session):
        season = season_service.create_season(db_session, "S1", _dt(2024, 1, 1))
        db_session.add_all([Guild(id="a", name="A"), Guild(id="b", name="B")])
        db_session.add_all([
            GuildSeason(guild_id="a", season_id=season.id, current_mmr=1500.0),
            GuildSeason(guild_id="b", season_id=season.id, current_mmr=800.0),
        ])
        db_session.flush()

        ended = season_service.end_season(db_session, season.id, _dt(2024, 5, 1))
        db_session.commit()

        assert not ended.is_active
        rows = {
            r.guild_id: r
            for r in db_session.scalars(select(GuildSeason)).all()
        }
        assert rows["a"].carryover_mmr == pytest.approx(1150.0)
        assert rows["b"].carryover_mmr == 1000.0

    def test_initialize_new_season(self, db_session):
        old = season_service.create_season(db_session, "S1", _dt(2024, 1, 1), _dt(2024, 5, 1))
        new = season_service.create_season(db_session, "S2", _dt(2024, 5, 1))
        db_session.add_all([Guild(id="a", name="A"), Guild(id="b", name="B")])
        db_session.add_all([
            GuildSeason(guild_id="a", season_id=old.id, current_mmr=1200.0),
            GuildSeason(guild_id="b", season_id=old.id, current_mmr=1100.0,
                        carryover_mmr=1010.0),
            GuildSeason(guild_id="b", season_id=new.id, current_mmr=1050.0),
        ])
        db_session.flush()

        created = season_service.initialize_new_season(db_session, new.id, old.id)

        assert created == 1
        seeded = db_session.scalar(
            select(GuildSeason).where(
                GuildSeason.guild_id == "a", GuildSeason.season_id == new.id
            )
        )
        assert seeded.current_mmr == pytest.approx(1060.0)
        kept = db_session.scalar(
            select(GuildSeason).where(
                GuildSeason.guild_id == "b", GuildSeason.season_id == new.id
            )
        )
        assert kept.current_mmr == 1050.0

    def test_initialize_unknown_season(self, db_session):
        with pytest.raises(ValueError, match="not found"):
            season_service.initialize_new_season(db_session, 1, 2)


class TestPrimeTime:
    """Hour-of-day windows."""

    @pytest.mark.parametrize(
        "hour, expected",
        [(21, False), (22, True), (23, True), (0, True), (1, True), (2, False), (10, False)],
    )
    def test_window_wrapping_midnight(self, db_session, hour, expected):
        season_service.add_prime_time_window(db_session, 22, 2)
        ts = _dt(2024, 3, 10, hour, 30)
        assert season_service.is_prime_time(db_session, 1, ts) is expected

    def test_window_timezone_does_not_shift_hours(self, db_session):
        """Hours are UTC whatever timezone the window is labelled with."""
        season_service.add_prime_time_window(db_session, 22, 2, "America/New_York")
        assert season_service.is_prime_time(db_session, 1, _dt(2024, 3, 10, 23))
        assert not season_service.is_prime_time(db_session, 1, _dt(2024, 3, 10, 3))

    def test_plain_window_end_exclusive(self, db_session):
        season_service.add_prime_time_window(db_session, 18, 21)
        assert season_service.is_prime_time(db_session, 1, _dt(2024, 3, 10, 18))
        assert not season_service.is_prime_time(db_session, 1, _dt(2024, 3, 10, 21))

    def test_no_windows_means_never(self, db_session):
        assert not season_service.is_prime_time(db_session, 1, _dt(2024, 3, 10, 20))

    @pytest.mark.parametrize("start, end", [(-1, 5), (0, 24), (25, 2)])
    def test_invalid_hours_rejected(self, db_session, start, end):
        with pytest.raises(ValueError, match="between 0 and 23"):
            season_service.add_prime_time_window(db_session, start, end)

    def test_remove_window(self, db_session):
        window = season_service.add_prime_time_window(db_session, 18, 22)
        season_service.remove_prime_time_window(db_session, window.id)
        assert season_service.get_prime_time_windows(db_session) == []
        with pytest.raises(ValueError):
            season_service.remove_prime_time_window(db_session, window.id)


class TestUpdateMass:
    """Running average of prime-time player counts."""

    @pytest.fixture
    def guild_season_id(self, db_engine):
        with Session(db_engine) as session:
            season = season_service.create_season(session, "S1", _dt(2024, 1, 1))
            session.add(Guild(id="a", name="A"))
            session.flush()
            row = GuildSeason(guild_id="a", season_id=season.id)
            session.add(row)
            season_service.add_prime_time_window(session, 22, 2)
            session.commit()
            return row.id

    def test_running_average(self, db_engine, guild_season_id):
        for players in (10, 20, 30):
            season_service.update_mass(db_engine, guild_season_id, players, _dt(2024, 3, 10, 23))
        with Session(db_engine) as session:
            mass = session.scalar(select(GuildPrimeTimeMass))
            assert mass.avg_mass == pytest.approx(20.0)
            assert mass.battle_count == 3

    def test_outside_prime_time_is_noop(self, db_engine, guild_season_id):
        result = season_service.update_mass(
            db_engine, guild_season_id, 10, _dt(2024, 3, 10, 12)
        )
        assert result is None
        with Session(db_engine) as session:
            assert session.scalar(select(GuildPrimeTimeMass)) is None

