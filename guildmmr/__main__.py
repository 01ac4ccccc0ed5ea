"""
guildmmr.__main__ — Entry point for ``python -m guildmmr``
==========================================================

Wiring:
1. Load .env (``DATABASE_URL``).
2. Load config.yaml (API location, pacing, crawl cadence).
3. Create the SQLAlchemy engine, ensure tables exist, seed default settings.
4. Warm the SettingsCache.
5. Open the battleboard client and crawl until Ctrl+C.

Run with::

    python -m guildmmr
"""

from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv

from guildmmr.config import load_config
from guildmmr.database.engine import create_db_engine, init_db
from guildmmr.engine.cache import SettingsCache
from guildmmr.ingest.client import AlbionClient
from guildmmr.services.crawl_service import run_forever

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("guildmmr")


async def _crawl(cfg, engine, cache) -> None:
    async with AlbionClient.from_config(cfg) as client:
        await run_forever(engine, client, cfg, cache)


def main() -> None:
    """Bootstrap and run the crawler."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — API: %s", cfg.api_base_url)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Settings cache.
    cache = SettingsCache(engine)
    cache.load_all()

    # 5. Run (blocks until Ctrl+C).
    logger.info("Starting crawler…")
    try:
        asyncio.run(_crawl(cfg, engine, cache))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
