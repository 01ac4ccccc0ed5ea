"""
tests/test_rating_service.py — Rating persistence integration tests
====================================================================

``process_battle`` and ``apply_delta`` against the in-memory SQLite
database: idempotency, MMR floor, counters, anti-farming history and
prime-time mass.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from conftest import BATTLE_START, make_battle, make_kill, two_guild_battle
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session

from guildmmr import constants as C
from guildmmr.database.models import (
    Base,
    Guild,
    GuildPrimeTimeMass,
    GuildSeason,
    MmrCalculationLog,
)
from guildmmr.engine.rating import DeltaResult
from guildmmr.engine.stats import BattleAnalysis, GuildBattleStats
from guildmmr.services import rating_service, season_service


@pytest.fixture
def engine(db_engine):
    """Re-use the shared conftest db_engine (SQLite, StaticPool)."""
    return db_engine


@pytest.fixture
def season_id(engine):
    with Session(engine) as session:
        season = season_service.create_season(
            session, "S1", datetime(2024, 1, 1, tzinfo=UTC)
        )
        session.commit()
        return season.id


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite shared by several threads.

    Every transaction starts with ``BEGIN IMMEDIATE`` so concurrent writers
    queue on the database lock the way row locks queue them on PostgreSQL.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _driver_autocommit(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


def _guild_season(engine, guild_id, season_id):
    with Session(engine) as session:
        return session.scalar(
            select(GuildSeason).where(
                GuildSeason.guild_id == guild_id, GuildSeason.season_id == season_id
            )
        )


def _logs(engine, guild_id=None):
    with Session(engine) as session:
        stmt = select(MmrCalculationLog).order_by(MmrCalculationLog.battle_started_at)
        if guild_id is not None:
            stmt = stmt.where(MmrCalculationLog.guild_id == guild_id)
        return list(session.scalars(stmt).all())


def _manual_result(guild_id: str, delta: float, is_win: bool) -> DeltaResult:
    return DeltaResult(
        guild_id=guild_id,
        delta=delta,
        is_win=is_win,
        k_factor=32.0,
        factors={"win_loss": {"value": 1.0 if is_win else -1.0, "weight": 0.3,
                              "weighted": 0.3 if is_win else -0.3}},
    )


def _manual_analysis(season_id: int, stats: GuildBattleStats, *, prime=False) -> BattleAnalysis:
    return BattleAnalysis(
        battle_id=77,
        season_id=season_id,
        started_at=BATTLE_START,
        guild_stats=[stats],
        total_players=30,
        total_fame=3_000_000,
        battle_duration=10,
        is_prime_time=prime,
    )


class TestProcessBattle:
    """End-to-end: analysis → deltas → persistence."""

    def test_two_guild_scenario(self, engine, season_id):
        battle, kills = two_guild_battle()
        summary = rating_service.process_battle(engine, 1001, battle, kills)
        assert summary == {"processed": 2, "duplicates": 0, "skipped": 0}

        alpha = _guild_season(engine, "guild-a", season_id)
        bravo = _guild_season(engine, "guild-b", season_id)
        (log_a,) = _logs(engine, "guild-a")
        assert 0 < log_a.mmr_change <= C.MAX_WIN_GAIN
        assert alpha.current_mmr == pytest.approx(1000 + log_a.mmr_change)
        assert bravo.current_mmr <= 1000
        assert (alpha.wins, alpha.losses, alpha.total_battles) == (1, 0, 1)
        assert (bravo.wins, bravo.losses) == (0, 1)
        assert alpha.total_fame_gained == 1_500_000
        assert alpha.mmr_fame_lost == 200_000

    def test_log_row_contents(self, engine, season_id):
        battle, kills = two_guild_battle()
        rating_service.process_battle(engine, 1001, battle, kills)
        (log_a,) = _logs(engine, "guild-a")
        assert log_a.previous_mmr == 1000.0
        assert log_a.new_mmr == pytest.approx(log_a.previous_mmr + log_a.mmr_change)
        assert log_a.is_win
        assert log_a.opponent_guilds == ["guild-b"]
        assert log_a.opponent_mmrs == [1000.0]
        assert set(log_a.factors) == set(C.FACTOR_WEIGHTS)
        assert log_a.calculation_version == C.CALCULATION_VERSION
        assert log_a.k_factor == 32.0

    def test_reprocessing_is_idempotent(self, engine, season_id):
        """The second run finds both log rows and changes nothing."""
        battle, kills = two_guild_battle()
        rating_service.process_battle(engine, 1001, battle, kills)
        before = _guild_season(engine, "guild-a", season_id).current_mmr

        summary = rating_service.process_battle(engine, 1001, battle, kills)

        assert summary == {"processed": 0, "duplicates": 2, "skipped": 0}
        after = _guild_season(engine, "guild-a", season_id)
        assert after.current_mmr == before
        assert after.total_battles == 1
        assert len(_logs(engine)) == 2

    def test_ineligible_battle_touches_nothing(self, engine, season_id):
        battle, kills = two_guild_battle()
        small = battle.model_copy(update={"total_fame": 1_000_000})
        summary = rating_service.process_battle(engine, 1001, small, kills)
        assert summary == {"processed": 0, "duplicates": 0, "skipped": 1}
        assert _logs(engine) == []

    def test_single_player_guild_not_rated(self, engine, season_id):
        """A one-player guild with no kills is filtered out and gets no log row."""
        battle = make_battle(
            2002,
            [
                {"id": "guild-a", "name": "Alpha", "alliance": "X", "kills": 15, "deaths": 2,
                 "killFame": 1_500_000, "players": 20},
                {"id": "guild-b", "name": "Bravo", "alliance": "Y", "kills": 2, "deaths": 15,
                 "killFame": 200_000, "players": 10},
                {"id": "guild-s", "name": "Lonely", "players": 1},
            ],
            total_players=31,
            total_fame=3_000_000,
        )
        _, kills = two_guild_battle(2002)
        summary = rating_service.process_battle(engine, 2002, battle, kills)
        assert summary["processed"] == 2
        assert _logs(engine, "guild-s") == []
        assert _guild_season(engine, "guild-s", season_id) is None

    def test_five_wins_against_same_opponent(self, engine, season_id):
        """From the fourth win on the gain is reduced by anti-farming."""
        for i in range(5):
            started = BATTLE_START + timedelta(days=i)
            battle, kills = two_guild_battle(3000 + i, started)
            rating_service.process_battle(engine, 3000 + i, battle, kills)

        logs = _logs(engine, "guild-a")
        assert len(logs) == 5
        assert all(log.is_win for log in logs)
        for log in logs[:3]:
            assert log.anti_farming_factor == 1.0
            assert log.original_mmr_change is None
        for log in logs[3:]:
            assert log.anti_farming_factor < 1.0
            assert log.mmr_change < log.original_mmr_change
        assert logs[4].anti_farming_factor < logs[3].anti_farming_factor

    def test_old_wins_outside_lookback_ignored(self, engine, season_id):
        for i in range(4):
            started = BATTLE_START + timedelta(days=40 * i)
            battle, kills = two_guild_battle(4000 + i, started)
            rating_service.process_battle(engine, 4000 + i, battle, kills)
        assert all(log.anti_farming_factor == 1.0 for log in _logs(engine, "guild-a"))


class TestApplyDelta:
    """Direct persistence of a single result."""

    def test_mmr_floored_at_zero(self, engine, season_id):
        with Session(engine) as session:
            session.add(Guild(id="g1", name="Sinking"))
            session.add(GuildSeason(guild_id="g1", season_id=season_id, current_mmr=5.0))
            session.commit()

        stats = GuildBattleStats(guild_id="g1", guild_name="Sinking", players=10)
        applied = rating_service.apply_delta(
            engine, "g1", season_id, _manual_result("g1", -20.0, False), stats,
            _manual_analysis(season_id, stats),
        )
        assert applied
        row = _guild_season(engine, "g1", season_id)
        assert row.current_mmr == 0.0
        (log,) = _logs(engine, "g1")
        assert log.new_mmr == 0.0
        assert log.mmr_change == -20.0

    def test_duplicate_returns_false(self, engine, season_id):
        stats = GuildBattleStats(guild_id="g2", guild_name="Twice", players=10)
        analysis = _manual_analysis(season_id, stats)
        result = _manual_result("g2", 10.0, True)
        assert rating_service.apply_delta(engine, "g2", season_id, result, stats, analysis)
        assert not rating_service.apply_delta(engine, "g2", season_id, result, stats, analysis)
        assert _guild_season(engine, "g2", season_id).current_mmr == 1010.0

    def test_name_only_guild_created_with_placeholder(self, engine, season_id):
        stats = GuildBattleStats(guild_id="placeholder:Nomad", guild_name="Nomad", players=10)
        rating_service.apply_delta(
            engine, stats.guild_id, season_id, _manual_result(stats.guild_id, 3.0, True),
            stats, _manual_analysis(season_id, stats),
        )
        with Session(engine) as session:
            assert session.get(Guild, "placeholder:Nomad").name == "Nomad"

    def test_prime_time_counters_and_mass(self, engine, season_id):
        with Session(engine) as session:
            season_service.add_prime_time_window(session, 18, 23)
            session.commit()
        stats = GuildBattleStats(guild_id="g3", guild_name="Primed", players=12)
        rating_service.apply_delta(
            engine, "g3", season_id, _manual_result("g3", 4.0, True), stats,
            _manual_analysis(season_id, stats, prime=True),
        )
        row = _guild_season(engine, "g3", season_id)
        assert row.prime_time_battles == 1
        assert row.mmr_prime_time_battles == 1
        with Session(engine) as session:
            mass = session.scalar(select(GuildPrimeTimeMass))
            assert mass.avg_mass == 12.0
            assert mass.battle_count == 1

    def test_mass_failure_does_not_roll_back_rating(self, engine, season_id):
        stats = GuildBattleStats(guild_id="g4", guild_name="Robust", players=12)
        with patch.object(season_service, "update_mass", side_effect=RuntimeError("boom")):
            applied = rating_service.apply_delta(
                engine, "g4", season_id, _manual_result("g4", 4.0, True), stats,
                _manual_analysis(season_id, stats, prime=True),
            )
        assert applied
        assert _guild_season(engine, "g4", season_id).current_mmr == 1004.0


class TestCountRecentWins:
    """History lookup feeding anti-farming."""

    def test_counts_per_enemy_inside_window(self, engine, season_id):
        battle, kills = two_guild_battle(5000)
        rating_service.process_battle(engine, 5000, battle, kills)
        with Session(engine) as session:
            later = BATTLE_START + timedelta(days=1)
            assert rating_service.count_recent_wins(
                session, "guild-a", season_id, ["guild-b", "other"], later
            ) == {"guild-b": 1}
            assert rating_service.count_recent_wins(
                session, "guild-a", season_id, ["guild-b"], BATTLE_START
            ) == {}
            assert rating_service.count_recent_wins(
                session, "guild-b", season_id, ["guild-a"], later
            ) == {}

    def test_empty_enemy_list(self, db_session):
        assert rating_service.count_recent_wins(
            db_session, "g", 1, [], datetime.now(UTC)
        ) == {}


def test_single_kill_battle_still_needs_two_guilds(engine, season_id):
    battle = make_battle(
        6000,
        [{"id": "a", "name": "A", "kills": 1, "killFame": 2_500_000, "players": 25}],
        total_players=25,
        total_fame=2_500_000,
    )
    summary = rating_service.process_battle(
        engine, 6000, battle, [make_kill(1, "A", None)]
    )
    assert summary["skipped"] == 1


class TestConcurrentApplyDelta:
    """Two workers rating the same guild for the same battle at once."""

    def test_only_one_worker_applies(self, file_engine):
        with Session(file_engine) as session:
            season = season_service.create_season(
                session, "S1", datetime(2024, 1, 1, tzinfo=UTC)
            )
            session.commit()
            sid = season.id

        stats = GuildBattleStats(guild_id="g3", guild_name="Racer", players=10)
        analysis = _manual_analysis(sid, stats)
        result = _manual_result("g3", 10.0, True)
        barrier = threading.Barrier(2)
        outcomes: list[bool] = []
        errors: list[Exception] = []

        def _worker():
            barrier.wait()
            try:
                outcomes.append(
                    rating_service.apply_delta(file_engine, "g3", sid, result, stats, analysis)
                )
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=_worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert sorted(outcomes) == [False, True]
        assert len(_logs(file_engine)) == 1
        guild_season = _guild_season(file_engine, "g3", sid)
        assert guild_season.total_battles == 1
        assert guild_season.current_mmr == 1010.0
