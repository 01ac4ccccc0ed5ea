"""
guildmmr.ingest.client — Rate-limited Battleboard API Client
=============================================================

All calls share one :class:`~guildmmr.ingest.limiter.TokenBucket` and one
concurrency semaphore, so however many coroutines crawl battles and kills
at once, the upstream sees at most ``rate_max_rps`` requests per second and
``max_concurrent`` in flight.

Each request is retried on transient failures (network errors, 5xx, 429)
with exponential backoff and jitter.  A 429's ``Retry-After`` header
replaces the computed delay.  Responses are validated with the pydantic
models in :mod:`guildmmr.ingest.schemas`; a validation failure is raised
immediately and never retried.

Usage::

    async with AlbionClient.from_config(cfg) as client:
        page = await client.fetch_battles_page(0, min_players=25)
        kills = await client.fetch_kills(page[0].albion_id)
        if client.should_slow_down():
            interval *= 2
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from guildmmr import __version__
from guildmmr.ingest.errors import AlbionAPIError, RateLimitError, ResponseValidationError
from guildmmr.ingest.limiter import RateLimitTracker, TokenBucket
from guildmmr.ingest.schemas import (
    BattleDetail,
    BattleListAdapter,
    BattleSummary,
    GuildSearchAdapter,
    GuildSearchResult,
    KillEvent,
    KillListAdapter,
)

if TYPE_CHECKING:
    from guildmmr.config import GuildMmrConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAGE_SIZE = 51

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 0.5
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_MAX_BACKOFF = 15.0
DEFAULT_JITTER = 0.1

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

_BattleDetailAdapter = TypeAdapter(BattleDetail)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


class AlbionClient:
    """Async client for the battleboard API.

    Parameters
    ----------
    base_url:
        API root, e.g. ``https://api.albionbb.com/us``.
    user_agent:
        Sent on every request.
    transport:
        Optional httpx transport (tests pass :class:`httpx.MockTransport`).
    sleep:
        Awaitable used for backoff waits; injectable for tests.
    """

    def __init__(
        self,
        base_url: str,
        user_agent: str | None = None,
        *,
        rate_max_rps: float = 4.0,
        max_concurrent: int = 2,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        jitter: float = DEFAULT_JITTER,
        transport: httpx.AsyncBaseTransport | None = None,
        bucket: TokenBucket | None = None,
        tracker: RateLimitTracker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.jitter = jitter

        self._bucket = bucket or TokenBucket(rate_max_rps)
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tracker = tracker or RateLimitTracker()
        self._sleep = sleep

        self.requests_total: Counter[tuple[str, int]] = Counter()
        self.errors_total: Counter[tuple[str, int]] = Counter()

        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"User-Agent": user_agent or f"guildmmr/{__version__}"},
            timeout=DEFAULT_TIMEOUT,
            transport=transport or httpx.AsyncHTTPTransport(retries=1),
        )

    @classmethod
    def from_config(cls, cfg: GuildMmrConfig, **kwargs: Any) -> AlbionClient:
        return cls(
            cfg.api_base_url,
            cfg.user_agent,
            rate_max_rps=cfg.rate_max_rps,
            max_concurrent=cfg.max_concurrent,
            **kwargs,
        )

    async def __aenter__(self) -> AlbionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------
    async def fetch_battles_page(self, page: int, min_players: int) -> list[BattleSummary]:
        """One page of the most recent battles with at least *min_players*."""
        params = {
            "offset": page,
            "limit": PAGE_SIZE,
            "sort": "recent",
            "minPlayers": min_players,
        }
        battles = await self._fetch("battles", "/battles", BattleListAdapter, params)
        logger.debug("Fetched battles page %d: %d battles", page, len(battles))
        return battles

    async def fetch_battle_detail(self, battle_id: int) -> BattleDetail:
        return await self._fetch("battle_detail", f"/battles/{battle_id}", _BattleDetailAdapter)

    async def fetch_kills(self, battle_id: int) -> list[KillEvent]:
        kills = await self._fetch(
            "battle_kills", "/battles/kills", KillListAdapter, {"ids": battle_id}
        )
        logger.debug("Fetched %d kill events for battle %d", len(kills), battle_id)
        return kills

    async def search_guilds(self, name: str) -> list[GuildSearchResult]:
        return await self._fetch(
            "guild_search", "/guilds/search", GuildSearchAdapter, {"search": name}
        )

    # -------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------
    def should_slow_down(self) -> bool:
        """True when the recent 429 ratio says the crawl loop should back off."""
        return self._tracker.should_slow_down()

    def stats(self) -> dict[str, Any]:
        return {
            "requests_total": sum(self.requests_total.values()),
            "errors_total": sum(self.errors_total.values()),
            "rate_limited_ratio": self._tracker.ratio(),
            "by_endpoint": {
                f"{endpoint}:{status}": count
                for (endpoint, status), count in sorted(self.requests_total.items())
            },
        }

    # -------------------------------------------------------------------
    # Request pipeline
    # -------------------------------------------------------------------
    async def _fetch(
        self,
        endpoint: str,
        path: str,
        adapter: TypeAdapter[T],
        params: dict[str, Any] | None = None,
    ) -> T:
        payload = await self._get_json(endpoint, path, params)
        try:
            return adapter.validate_python(payload)
        except PydanticValidationError as exc:
            self.errors_total[(endpoint, 200)] += 1
            logger.error(
                "Response from %s failed validation (%d errors)", path, exc.error_count()
            )
            raise ResponseValidationError(path, str(exc)) from exc

    async def _get_json(
        self, endpoint: str, path: str, params: dict[str, Any] | None
    ) -> Any:
        attempt = 0
        while True:
            await self._bucket.acquire()
            async with self._semaphore:
                try:
                    return await self._request_once(endpoint, path, params)
                except AlbionAPIError as exc:
                    error = exc

            if not error.is_retryable or attempt >= self.max_retries:
                logger.error(
                    "Giving up on %s after %d attempt(s): %s", path, attempt + 1, error
                )
                raise error

            delay = self._backoff_delay(attempt, error)
            logger.warning(
                "Retrying %s in %.2fs (attempt %d/%d): %s",
                path, delay, attempt + 1, self.max_retries, error,
            )
            await self._sleep(delay)
            attempt += 1

    async def _request_once(
        self, endpoint: str, path: str, params: dict[str, Any] | None
    ) -> Any:
        try:
            response = await self._http.get(path, params=params)
        except httpx.TransportError as exc:
            self.requests_total[(endpoint, 0)] += 1
            self.errors_total[(endpoint, 0)] += 1
            raise AlbionAPIError(
                f"Network error for {path}: {exc!r}", is_retryable=True
            ) from exc

        status = response.status_code
        self.requests_total[(endpoint, status)] += 1
        self._tracker.record(status == 429)

        if status == 429:
            self.errors_total[(endpoint, status)] += 1
            raise RateLimitError(path, parse_retry_after(response.headers.get("Retry-After")))
        if status >= 400:
            self.errors_total[(endpoint, status)] += 1
            raise AlbionAPIError.from_status(status, path)

        try:
            return response.json()
        except ValueError as exc:
            self.errors_total[(endpoint, status)] += 1
            raise ResponseValidationError(path, "body is not valid JSON") from exc

    def _backoff_delay(self, attempt: int, error: AlbionAPIError) -> float:
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return error.retry_after
        base = min(self.max_backoff, self.initial_backoff * self.backoff_factor ** attempt)
        return min(self.max_backoff, base + base * self.jitter * random.random())
