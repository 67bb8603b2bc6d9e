"""
CoinGecko market data client backed by the local Price Store.

Universe pages propagate upstream failures so a rebalance never runs on a
partial universe. Per-asset lookups (categories, prices, history) degrade
to ``[]`` / ``None`` / ``0`` once retries are exhausted.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional
import asyncio

import httpx

from index_engine.core.circuit_breaker import CircuitOpenError
from index_engine.core.config import settings
from index_engine.core.exceptions import RateLimitError
from index_engine.db.database import async_session

from . import stores
from .calendar import SECONDS_PER_DAY, iter_days, today_utc_midnight, utc_midnight_of
from .core import async_retry_with_backoff, logger, bg_logger
from .models import Asset, PricePoint, find_nearest_price

# Coins refreshed concurrently by sync_missing_prices
_SYNC_CONCURRENCY = 5

# Provider failures that a per-asset lookup degrades to a skip
UPSTREAM_ERRORS = (httpx.HTTPError, RateLimitError, CircuitOpenError)


def daily_points(raw_prices: List[List[float]]) -> List[PricePoint]:
    """
    Provider ``[[ms, price], ...]`` as one point per UTC day.

    The first point of each day is kept, so a trailing intraday "now" sample
    never overwrites the day's midnight close.
    """
    by_day: Dict[int, float] = {}
    for ts_ms, price in raw_prices or []:
        if price is None:
            continue
        by_day.setdefault(utc_midnight_of(int(ts_ms) // 1000), float(price))
    return [PricePoint(ts, price) for ts, price in sorted(by_day.items())]


class MarketDataClient:
    """Async CoinGecko client."""

    def __init__(
        self,
        session_factory=None,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session
        self._client = client
        self.base_url = (base_url or settings.coingecko_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.coingecko_api_key

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-cg-pro-api-key"] = self.api_key
        return headers

    async def _request(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        response = await self._get_client().get(
            f"{self.base_url}{path}", params=params, headers=self._headers()
        )
        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitError(
                f"CoinGecko rate limit on {path}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        response.raise_for_status()
        return response.json()

    async def _get(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        return await async_retry_with_backoff(
            lambda: self._request(path, params),
            description=f"GET {path}",
        )

    # --- Universe -----------------------------------------------------------

    async def list_market_cap_ranked(self, page: int, page_size: int | None = None) -> List[Asset]:
        """One page of the universe, market cap descending."""
        rows = await self._get(
            "/coins/markets",
            {
                "vs_currency": "usd",
                "order": "market_cap_desc",
                "sparkline": "false",
                "per_page": page_size or settings.market_cap_page_size,
                "page": page,
            },
        )
        return [Asset.from_provider(row) for row in rows or []]

    async def list_category_tokens(self, category: str) -> List[Asset]:
        """The first 250 tokens of a provider category, market cap descending."""
        rows = await self._get(
            "/coins/markets",
            {
                "vs_currency": "usd",
                "category": category,
                "order": "market_cap_desc",
                "page": 1,
                "per_page": 250,
            },
        )
        return [Asset.from_provider(row) for row in rows or []]

    # --- Per-asset lookups --------------------------------------------------

    async def get_categories(self, asset_id: str) -> List[str]:
        """Category tags from the local cache, else the provider (cached when non-empty)."""
        if not asset_id:
            return []

        async with self._session_factory() as session:
            cached = await stores.get_categories(session, asset_id)
            if cached is not None:
                return list(cached)

        try:
            data = await self._get(f"/coins/{asset_id}")
        except UPSTREAM_ERRORS as e:
            logger.error(f"Error fetching categories for {asset_id}: {e}")
            return []

        categories = [c for c in (data or {}).get("categories") or [] if c]
        if categories:
            async with self._session_factory() as session:
                await stores.set_categories(session, asset_id, categories)
                await session.commit()
        return categories

    async def price_at(self, asset_id: str, symbol: str, timestamp: int) -> Optional[float]:
        """
        USD price of ``asset_id`` on the UTC day of ``timestamp``.

        Lookup order: exact stored day, nearest stored price within
        ``stored_price_tolerance_days``, then a provider range fetch of
        ``price_fetch_window_days`` around the day (stored, closest returned).
        """
        day = utc_midnight_of(timestamp)
        tolerance = settings.stored_price_tolerance_days * SECONDS_PER_DAY

        async with self._session_factory() as session:
            price = await stores.get_exact_price(session, asset_id, day)
            if price is not None:
                return price
            price = await stores.get_nearest_price(session, asset_id, day, tolerance)
            if price is not None:
                return price

        window = settings.price_fetch_window_days * SECONDS_PER_DAY
        try:
            data = await self._get(
                f"/coins/{asset_id}/market_chart/range",
                {"vs_currency": "usd", "from": day - window, "to": day + window},
            )
        except UPSTREAM_ERRORS as e:
            logger.error(f"Failed to fetch historical price for {asset_id}: {e}")
            return None

        points = daily_points((data or {}).get("prices") or [])
        if not points:
            return None

        async with self._session_factory() as session:
            await stores.upsert_prices(session, asset_id, symbol, points)
            await session.commit()

        return find_nearest_price(points, day)

    async def ensure_price_history(self, asset_id: str, symbol: str) -> int:
        """Backfill the full daily history of an asset the store has never seen."""
        async with self._session_factory() as session:
            if await stores.has_prices(session, asset_id):
                return 0

        try:
            data = await self._get(
                f"/coins/{asset_id}/market_chart",
                {"vs_currency": "usd", "days": settings.history_backfill_days},
            )
        except UPSTREAM_ERRORS as e:
            logger.error(f"Failed to backfill price history for {symbol} ({asset_id}): {e}")
            return 0

        points = daily_points((data or {}).get("prices") or [])
        if not points:
            return 0

        async with self._session_factory() as session:
            stored = await stores.upsert_prices(session, asset_id, symbol, points)
            await session.commit()
        logger.info(f"Stored {stored} daily prices for {symbol} ({asset_id})")
        return stored

    # --- Maintenance --------------------------------------------------------

    async def _missing_points(
        self, coin_id: str, symbol: str, last_ts: int, today: int, semaphore: asyncio.Semaphore
    ) -> List[PricePoint]:
        missing = list(iter_days(utc_midnight_of(last_ts) + SECONDS_PER_DAY, today + SECONDS_PER_DAY))
        if not missing:
            return []

        async with semaphore:
            try:
                data = await self._get(
                    f"/coins/{coin_id}/market_chart/range",
                    {"vs_currency": "usd", "from": missing[0], "to": missing[-1]},
                )
            except UPSTREAM_ERRORS as e:
                bg_logger.error(f"Failed to fetch prices for {symbol}: {e}")
                return []

        wanted = set(missing)
        return [p for p in daily_points((data or {}).get("prices") or []) if p.timestamp in wanted]

    async def sync_missing_prices(self, now=None) -> int:
        """
        Extend every stored series up to today's UTC midnight.

        Assets whose latest price is older than ``stored_price_tolerance_days``
        are considered abandoned and skipped.
        """
        today = today_utc_midnight(now)
        stale_before = today - settings.stored_price_tolerance_days * SECONDS_PER_DAY

        async with self._session_factory() as session:
            latest = await stores.latest_price_timestamps(session)

        semaphore = asyncio.Semaphore(_SYNC_CONCURRENCY)
        jobs = {}
        for coin_id, (symbol, last_ts) in latest.items():
            if last_ts < stale_before:
                bg_logger.info(f"Skipping {symbol} - last update was over {settings.stored_price_tolerance_days} days ago")
                continue
            jobs[coin_id] = (symbol, self._missing_points(coin_id, symbol, last_ts, today, semaphore))

        results = await asyncio.gather(*(job for _, job in jobs.values()))

        stored = 0
        async with self._session_factory() as session:
            for (coin_id, (symbol, _)), points in zip(jobs.items(), results):
                stored += await stores.upsert_prices(session, coin_id, symbol, points)
            await session.commit()

        bg_logger.info(f"Stored {stored} missing prices for {len(jobs)} assets")
        return stored
