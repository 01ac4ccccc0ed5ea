"""
guildmmr.config — YAML Configuration Loader
============================================

Reads ``config.yaml`` for **infrastructure-only** settings (upstream API
location, request pacing, crawl cadence).  Rating and participation
tuning values live in the ``settings`` database table and are read through
:class:`~guildmmr.engine.cache.SettingsCache`.

Secrets (``DATABASE_URL``) come from the environment, never from YAML.

Usage::

    from guildmmr.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.api_base_url)      # "https://api.albionbb.com/us"
    print(cfg.rate_max_rps)      # 4
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure only.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class GuildMmrConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Upstream API
    api_base_url: str
    user_agent: str

    # Request pacing
    rate_max_rps: float = 4.0
    max_concurrent: int = 2

    # Crawl loop
    crawl_interval_sec: int = 45
    max_pages_per_crawl: int = 8
    min_players: int = 25
    slow_down_multiplier: float = 2.0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> GuildMmrConfig:
    """Read *path* and return a :class:`GuildMmrConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return GuildMmrConfig(
        api_base_url=str(raw["api_base_url"]).rstrip("/"),
        user_agent=raw["user_agent"],
        rate_max_rps=float(raw.get("rate_max_rps", 4.0)),
        max_concurrent=int(raw.get("max_concurrent", 2)),
        crawl_interval_sec=int(raw.get("crawl_interval_sec", 45)),
        max_pages_per_crawl=int(raw.get("max_pages_per_crawl", 8)),
        min_players=int(raw.get("min_players", 25)),
        slow_down_multiplier=float(raw.get("slow_down_multiplier", 2.0)),
    )
