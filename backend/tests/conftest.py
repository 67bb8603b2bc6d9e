import asyncio
import os
import tempfile

# Configure before anything from index_engine reads settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="index_engine_logs_")
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["RETRY_INITIAL_DELAY"] = "0"
os.environ["COINGECKO_API_KEY"] = "test-cg-key"

import pytest
from datetime import date
from typing import Dict, List

from index_engine.db.database import Base, build_engine, build_session_factory
import index_engine.db.models  # noqa: F401  (register tables)
from index_engine.core.circuit_breaker import provider_circuit_breaker
from index_engine.services.sync_status import run_status
from index_engine.services.index_service import stores
from index_engine.services.index_service.calendar import to_timestamp
from index_engine.services.index_service.models import Asset, ListingRecord


@pytest.fixture
async def test_engine():
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture(autouse=True)
def reset_shared_state():
    provider_circuit_breaker.reset()
    run_status.clear_rate_limit()
    yield
    provider_circuit_breaker.reset()
    run_status.clear_rate_limit()


def ts(year: int, month: int, day: int) -> int:
    return to_timestamp(date(year, month, day))


class FakeMarketData:
    """In-memory stand-in for MarketDataClient."""

    def __init__(
        self,
        universe: List[Asset] | None = None,
        prices: Dict[str, float] | None = None,
        categories: Dict[str, List[str]] | None = None,
        category_tokens: List[Asset] | None = None,
        page_size: int = 250,
    ):
        self.universe = universe or []
        self.prices = prices or {}
        self.categories = categories or {}
        self.category_tokens = category_tokens or []
        self.page_size = page_size
        self.pages_requested: List[int] = []
        self.price_calls: List[str] = []
        self.history_calls: List[str] = []
        self.category_calls: List[str] = []
        self.events: List[tuple] = []
        self.max_categories_in_flight = 0
        self._categories_in_flight = 0

    async def list_market_cap_ranked(self, page, page_size=None):
        self.pages_requested.append(page)
        size = self.page_size
        return self.universe[(page - 1) * size: page * size]

    async def list_category_tokens(self, category):
        return list(self.category_tokens)

    async def get_categories(self, asset_id):
        self.category_calls.append(asset_id)
        self.events.append(("categories", asset_id))
        self._categories_in_flight += 1
        self.max_categories_in_flight = max(self.max_categories_in_flight, self._categories_in_flight)
        await asyncio.sleep(0)
        self._categories_in_flight -= 1
        return self.categories.get(asset_id, [])

    async def price_at(self, asset_id, symbol, timestamp):
        self.price_calls.append(asset_id)
        self.events.append(("price", asset_id))
        return self.prices.get(asset_id)

    async def ensure_price_history(self, asset_id, symbol):
        self.history_calls.append(asset_id)
        return 0

    async def aclose(self):
        return None


def make_asset(asset_id: str, symbol: str, market_cap: float = 1e9, rank: int | None = 1, categories=None) -> Asset:
    return Asset(asset_id=asset_id, symbol=symbol, market_cap=market_cap, market_cap_rank=rank,
                 categories=list(categories or []))


async def seed_listings(session_factory, symbols, exchange="binance", listed="2020-01-01",
                        quote="USDC", whitelist=True):
    """Listing records for ``{SYM}{quote}`` on ``exchange``; optionally whitelisted."""
    async with session_factory() as session:
        for symbol in symbols:
            await stores.upsert_listing_record(
                session,
                ListingRecord(pair=f"{symbol}{quote}", base_symbol=symbol, listing_date={exchange: listed}),
            )
        if whitelist:
            existing = await stores.load_whitelist(session, "binance")
            pairs = [{"pair": p, "quote_asset": p[-4:]} for p in existing]
            pairs += [{"pair": f"{s}{quote}", "quote_asset": quote} for s in symbols]
            await stores.replace_whitelist(session, "binance", pairs)
        await session.commit()
