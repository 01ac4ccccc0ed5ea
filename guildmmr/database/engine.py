"""
guildmmr.database.engine — Engine, sessions and the thread bridge
===================================================================

The crawler is an ``asyncio`` program talking to a synchronous
SQLAlchemy/psycopg2 stack.  Storage and rating functions stay plain
synchronous code that takes an :class:`~sqlalchemy.Engine`; coroutines
reach them through :func:`run_db`, which runs them on the default thread
pool so pending battleboard requests keep flowing while a battle is rated.

Typical start-up::

    engine = create_db_engine()          # DATABASE_URL from .env
    init_db(engine)                      # tables + default tunables

    summary = await run_db(process_battle, engine, battle_id, battle, kills)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from guildmmr.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# One crawl pass rates battles one after another, but run_db calls and the
# post-commit prime-time mass update can overlap briefly.
POOL_SIZE = 4
MAX_OVERFLOW = 4
POOL_TIMEOUT_SEC = 30
POOL_RECYCLE_SEC = 1800


def create_db_engine(url: str | None = None) -> Engine:
    """Engine for *url*, falling back to the ``DATABASE_URL`` env var.

    Raises :class:`RuntimeError` when neither is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and point it at the guildmmr PostgreSQL database."
        )

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args["application_name"] = "guildmmr"

    engine = create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_timeout=POOL_TIMEOUT_SEC,
        pool_recycle=POOL_RECYCLE_SEC,
        connect_args=connect_args,
    )
    logger.info("Rating database → %s/%s", engine.url.host, engine.url.database)
    return engine


def init_db(engine: Engine) -> None:
    """Create missing tables, then seed the default rating tunables.

    Both steps only add what is absent, so this runs on every start.
    """
    Base.metadata.create_all(engine)
    logger.info("Rating tables verified / created.")

    from guildmmr.database.seed import seed_default_settings

    seed_default_settings(engine)


@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Unit of work: commit when the block exits cleanly, roll back otherwise."""
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await synchronous *func* on a worker thread (:func:`asyncio.to_thread`)."""
    return await asyncio.to_thread(func, *args, **kwargs)
