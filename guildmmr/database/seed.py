"""
guildmmr.database.seed — Default Settings Seeder
=================================================

Baseline tunables seeded on first startup: battle eligibility,
significance-filter thresholds, K-factor shaping, and farming penalties.

Idempotent — only inserts keys that don't already exist.  Values edited
by an operator are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine

from guildmmr import constants as C
from guildmmr.database.engine import get_session
from guildmmr.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "battle.min_total_players": (
        C.MIN_TOTAL_PLAYERS, "battle", "Minimum players for a battle to be rated",
    ),
    "battle.min_total_fame": (
        C.MIN_TOTAL_FAME, "battle", "Minimum total fame for a battle to be rated",
    ),
    "participation.relative_threshold": (
        0.15, "participation", "Share of fame / kills+deaths / players counted as significant",
    ),
    "participation.min_fame": (1_000_000, "participation", "Absolute fame floor"),
    "participation.min_kills_deaths": (12, "participation", "Absolute kills+deaths floor"),
    "participation.min_players": (2, "participation", "Absolute player-count floor"),
    "participation.small_battle_kd_cutoff": (
        20, "participation", "Battles at or under this kills+deaths total use scaled floors",
    ),
    "participation.small_battle_scale": (
        0.45, "participation", "Floor multiplier for small battles",
    ),
    "participation.major_alliance_bonus": (
        0.3, "participation", "Threshold and floor reduction for guilds in a top-fame alliance",
    ),
    "participation.major_alliance_count": (
        3, "participation", "How many top-fame alliances count as major",
    ),
    "participation.single_player_min_kills_deaths": (
        8, "participation", "Kills+deaths a solo guild must reach",
    ),
    "participation.single_player_min_fame": (
        1_000_000, "participation", "Fame a solo guild must reach",
    ),
    "participation.small_group_max_players": (
        3, "participation", "Guilds up to this size use the small-group rule",
    ),
    "participation.small_group_min_kills_deaths": (
        3, "participation", "Kills+deaths a small group must reach",
    ),
    "rating.k_factor": (C.BASE_K_FACTOR, "rating", "Base K-factor at 1000 MMR"),
    "rating.k_reduction_per_100": (
        C.K_REDUCTION_PER_100, "rating", "Geometric K reduction per 100 MMR above baseline",
    ),
    "rating.k_floor_ratio": (C.K_FLOOR_RATIO, "rating", "Lowest K as a share of base K"),
    "rating.max_win_gain": (C.MAX_WIN_GAIN, "rating", "Cap on MMR gained from a single win"),
    "rating.low_ip_threshold": (
        C.LOW_IP_THRESHOLD, "anti_farming", "Average item power considered low-geared",
    ),
    "rating.low_ip_enemy_ratio": (
        C.LOW_IP_ENEMY_RATIO, "anti_farming", "Share of low-IP enemies that triggers the penalty",
    ),
    "rating.low_ip_penalty": (C.LOW_IP_PENALTY, "anti_farming", "Delta multiplier for low-IP farming"),
    "rating.low_ip_max_gain": (C.LOW_IP_MAX_GAIN, "anti_farming", "Cap on a low-IP farming win"),
    "rating.anti_farming_lookback_days": (
        C.ANTI_FARMING_LOOKBACK_DAYS, "anti_farming", "Days of history checked for repeat wins",
    ),
    "rating.anti_farming_threshold": (
        C.ANTI_FARMING_THRESHOLD, "anti_farming", "Wins against one enemy before reduction starts",
    ),
    "rating.anti_farming_max_wins": (
        C.ANTI_FARMING_MAX_WINS, "anti_farming", "Wins against one enemy at which gain reaches 0",
    ),
    "season.carryover_ratio": (
        C.CARRYOVER_RATIO, "season", "Share of MMR above baseline carried into the next season",
    ),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist.

    Runs on every startup but only writes rows for keys that are missing,
    so it is safe to call repeatedly.
    """
    inserted = 0
    with get_session(engine) as session:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            if session.get(Setting, key) is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
