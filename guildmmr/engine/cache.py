"""
guildmmr.engine.cache — In-Memory Settings Cache
=================================================

Rating and participation tunables live in the ``settings`` table.  The
analysis and rating engines are pure and must not open sessions, so the
tunables are loaded once into this cache and read through typed
accessors.  Call :meth:`SettingsCache.reload` after an operator edits a
setting.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from guildmmr.database.models import Setting

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class SettingsCache:
    """Thread-safe in-memory view of the ``settings`` table.

    Usage:
        cache = SettingsCache(engine)
        cache.load_all()

        max_gain = cache.get_float("rating.max_win_gain", default=25.0)
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        self._settings: dict[str, Any] = {}

    def load_all(self) -> None:
        """Load every setting from the DB. Call on startup."""
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json

        with self._lock:
            self._settings = parsed
        logger.info("SettingsCache loaded: %d settings", len(parsed))

    reload = load_all

    # -------------------------------------------------------------------
    # Cache reads (thread-safe)
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return float(val)
        except (TypeError, ValueError):
            return default
