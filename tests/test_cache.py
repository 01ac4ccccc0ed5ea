"""
tests/test_cache.py — SettingsCache & seeder
=============================================

Typed accessors, reload after an operator edit, and idempotent seeding of
the default tunables.
"""

from __future__ import annotations

import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from guildmmr.database.models import Setting
from guildmmr.database.seed import DEFAULT_SETTINGS, seed_default_settings
from guildmmr.engine.cache import SettingsCache


def _put(engine, key, raw):
    with Session(engine) as session:
        row = session.get(Setting, key)
        if row is None:
            session.add(Setting(key=key, value_json=raw))
        else:
            row.value_json = raw
        session.commit()


class TestAccessors:
    """Parsed JSON values and typed fallbacks."""

    @pytest.fixture
    def cache(self, db_engine):
        _put(db_engine, "rating.k_factor", "40")
        _put(db_engine, "rating.max_win_gain", "12.5")
        _put(db_engine, "broken", "not json")
        _put(db_engine, "listy", json.dumps([1, 2]))
        c = SettingsCache(db_engine)
        c.load_all()
        return c

    def test_int_and_float(self, cache):
        assert cache.get_int("rating.k_factor") == 40
        assert cache.get_float("rating.max_win_gain") == 12.5
        assert cache.get_float("rating.k_factor") == 40.0

    def test_missing_key_uses_default(self, cache):
        assert cache.get_int("nope", 7) == 7
        assert cache.get_float("nope", 1.5) == 1.5
        assert cache.get_setting("nope") is None

    def test_unparseable_json_kept_as_raw_string(self, cache):
        assert cache.get_setting("broken") == "not json"
        assert cache.get_int("broken", 3) == 3

    def test_uncastable_value_falls_back(self, cache):
        assert cache.get_setting("listy") == [1, 2]
        assert cache.get_float("listy", 2.0) == 2.0

    def test_reload_picks_up_edits(self, db_engine, cache):
        _put(db_engine, "rating.k_factor", "16")
        assert cache.get_int("rating.k_factor") == 40
        cache.reload()
        assert cache.get_int("rating.k_factor") == 16


class TestSeeder:
    """Default settings are inserted once and never overwritten."""

    def test_seeds_every_default(self, db_engine):
        seed_default_settings(db_engine)
        with Session(db_engine) as session:
            count = session.scalar(select(func.count()).select_from(Setting))
        assert count == len(DEFAULT_SETTINGS)

    def test_idempotent_and_preserves_operator_edits(self, db_engine):
        seed_default_settings(db_engine)
        _put(db_engine, "rating.max_win_gain", "10")
        seed_default_settings(db_engine)

        with Session(db_engine) as session:
            count = session.scalar(select(func.count()).select_from(Setting))
            edited = session.get(Setting, "rating.max_win_gain")
        assert count == len(DEFAULT_SETTINGS)
        assert edited.value_json == "10"

    def test_seeded_values_readable_through_cache(self, db_engine):
        seed_default_settings(db_engine)
        cache = SettingsCache(db_engine)
        cache.load_all()
        assert cache.get_int("battle.min_total_players") == 25
        assert cache.get_float("participation.relative_threshold") == 0.15
        assert cache.get_setting("rating.anti_farming_max_wins") == 10
