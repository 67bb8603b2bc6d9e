"""Primary exchange whitelist refresh from Binance exchangeInfo."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

import httpx

from index_engine.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from index_engine.core.config import settings
from index_engine.db.database import async_session

from . import stores
from .core import async_retry_with_backoff, bg_logger
from .pairs import PRIMARY_EXCHANGE, QUOTE_PREFERENCE

exchange_circuit_breaker = CircuitBreaker(
    config=CircuitBreakerConfig(
        failure_threshold=settings.circuit_failure_threshold,
        recovery_timeout=settings.circuit_recovery_timeout,
    ),
    name=PRIMARY_EXCHANGE,
)


@dataclass
class WhitelistDiff:
    total: int = 0
    listings: List[str] = field(default_factory=list)
    delistings: List[str] = field(default_factory=list)


def tradable_pairs(exchange_info: Dict[str, Any]) -> List[Dict[str, str]]:
    """TRADING spot pairs quoted in USDC or USDT."""
    pairs = []
    for symbol in exchange_info.get("symbols") or []:
        if symbol.get("status") != "TRADING":
            continue
        if symbol.get("quoteAsset") not in QUOTE_PREFERENCE:
            continue
        pairs.append({
            "pair": symbol["symbol"].upper(),
            "quote_asset": symbol.get("quoteAsset"),
            "status": symbol["status"],
        })
    return pairs


class ExchangePairSync:
    """Keeps the stored whitelist in step with the exchange."""

    def __init__(self, session_factory=None, client: httpx.AsyncClient | None = None, url: str | None = None):
        self._session_factory = session_factory or async_session
        self._client = client
        self.url = url or settings.binance_exchange_info_url

    async def _fetch(self) -> Dict[str, Any]:
        if self._client is not None:
            response = await self._client.get(self.url)
            response.raise_for_status()
            return response.json()
        async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            return response.json()

    async def sync_whitelist(self) -> WhitelistDiff:
        """Replace the stored whitelist and report pairs that appeared or vanished."""
        info = await async_retry_with_backoff(
            self._fetch,
            breaker=exchange_circuit_breaker,
            description="Binance exchangeInfo",
        )
        pairs = tradable_pairs(info)

        async with self._session_factory() as session:
            previous = await stores.load_whitelist(session, PRIMARY_EXCHANGE)
            total = await stores.replace_whitelist(session, PRIMARY_EXCHANGE, pairs)
            await session.commit()

        current = {p["pair"] for p in pairs}
        diff = WhitelistDiff(
            total=total,
            listings=sorted(current - previous) if previous else [],
            delistings=sorted(previous - current),
        )
        bg_logger.info(
            f"Whitelist synced: {diff.total} pairs, "
            f"{len(diff.listings)} listings, {len(diff.delistings)} delistings"
        )
        return diff
