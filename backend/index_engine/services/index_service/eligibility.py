from __future__ import annotations

from collections import Counter
from typing import AsyncIterator, Dict, List
import asyncio

from index_engine.core.config import settings
from index_engine.core.exceptions import NoEligibleConstituentsError
from index_engine.db.database import async_session

from . import stores
from .core import logger, bg_logger
from .market_data import MarketDataClient
from .models import Asset, Constituent, RebalanceSnapshot, SkippedAsset
from .pairs import PRIMARY_EXCHANGE, PairResolver
from .registry import BROAD, IndexDefinition, get_index_definition
from .weights import distribute_weights, is_blacklisted, nav_at_rebalance

# Category lookups in flight per page
_CATEGORY_CONCURRENCY = 5


class EligibilityService:
    """Selects and weights the constituents of an index at a timestamp."""

    def __init__(self, market_data: MarketDataClient | None = None, session_factory=None) -> None:
        self._session_factory = session_factory or async_session
        self.market_data = market_data or MarketDataClient(session_factory=self._session_factory)

    async def load_resolver(self) -> PairResolver:
        async with self._session_factory() as session:
            listings = await stores.load_listing_records(session)
            whitelist = await stores.load_whitelist(session, PRIMARY_EXCHANGE)
        return PairResolver(listings, whitelist)

    async def _pages(self, definition: IndexDefinition) -> AsyncIterator[List[Asset]]:
        """Broad indices page through the whole universe; thematic ones read their category list."""
        if definition.mode != BROAD:
            yield await self.market_data.list_category_tokens(definition.category)
            return

        page = 1
        while True:
            chunk = await self.market_data.list_market_cap_ranked(page, settings.market_cap_page_size)
            if not chunk:
                return
            yield chunk
            page += 1

    async def _prefetch_categories(
        self,
        page: List[Asset],
        definition: IndexDefinition,
        resolver: PairResolver,
        as_of: int,
    ) -> Dict[str, List[str]]:
        """Category tags of every tradable candidate on ``page`` that lacks them, fetched concurrently."""
        wanted = []
        for asset in page:
            if (asset.market_cap or 0) < definition.min_market_cap:
                break
            if asset.categories or not asset.asset_id:
                continue
            if definition.mode == BROAD and not asset.market_cap_rank:
                continue
            if resolver.resolve(asset.symbol, as_of) is not None:
                wanted.append(asset.asset_id)

        semaphore = asyncio.Semaphore(_CATEGORY_CONCURRENCY)

        async def fetch(asset_id: str) -> List[str]:
            async with semaphore:
                return await self.market_data.get_categories(asset_id)

        results = await asyncio.gather(*(fetch(asset_id) for asset_id in wanted))
        return dict(zip(wanted, results))

    async def select_constituents(
        self,
        definition: IndexDefinition,
        as_of: int,
        target_count: int,
        resolver: PairResolver,
    ) -> tuple[List[Constituent], List[SkippedAsset]]:
        """Walk the candidates in order and keep the first ``target_count`` eligible ones."""
        included: List[Constituent] = []
        skipped: List[SkippedAsset] = []
        symbols: set[str] = set()
        floor = definition.min_market_cap

        def skip(asset: Asset, reason: str) -> None:
            skipped.append(SkippedAsset(asset.asset_id, asset.symbol, reason))

        async for page in self._pages(definition):
            page_categories = await self._prefetch_categories(page, definition, resolver, as_of)

            for asset in page:
                if len(included) >= target_count:
                    return included, skipped
                if (asset.market_cap or 0) < floor:
                    skip(asset, "below_floor")
                    return included, skipped
                if definition.mode == BROAD and not asset.market_cap_rank:
                    skip(asset, "no_rank")
                    continue
                if not asset.asset_id:
                    skip(asset, "empty_id")
                    continue

                symbol = asset.symbol.upper()
                if symbol in symbols:
                    skip(asset, "duplicate")
                    continue

                pair = resolver.resolve(symbol, as_of)
                if pair is None:
                    skip(asset, "no_pair")
                    continue

                categories = asset.categories or page_categories.get(asset.asset_id)
                if categories is None:
                    categories = await self.market_data.get_categories(asset.asset_id)
                if is_blacklisted(symbol, categories, settings.blacklisted_categories_set, settings.blacklisted_tokens_set):
                    logger.warning(f"Excluded {asset.asset_id} (categories: {', '.join(categories)})")
                    skip(asset, "blacklisted")
                    continue

                price = await self.market_data.price_at(asset.asset_id, asset.symbol, as_of)
                if not price:
                    skip(asset, "no_price")
                    continue

                await self.market_data.ensure_price_history(asset.asset_id, asset.symbol)

                included.append(Constituent(pair=pair, asset_id=asset.asset_id, weight_bps=0, price=price))
                symbols.add(symbol)

            if len(included) >= target_count:
                break

        return included, skipped

    async def compute_weights(
        self,
        index_id: int,
        as_of: int,
        target_count: int | None = None,
        persist: bool = True,
    ) -> RebalanceSnapshot:
        """
        Build and store the rebalance snapshot of ``index_id`` at ``as_of``.

        Raises:
            UnknownIndexError: ``index_id`` is not registered.
            NoEligibleConstituentsError: nothing passed eligibility; nothing is written.
        """
        definition = get_index_definition(index_id)
        target_count = target_count or settings.target_count
        resolver = await self.load_resolver()

        picked, skipped = await self.select_constituents(definition, as_of, target_count, resolver)
        if not picked:
            raise NoEligibleConstituentsError(index_id, as_of)

        bps = distribute_weights(len(picked))
        constituents = [
            Constituent(pair=c.pair, asset_id=c.asset_id, weight_bps=w, price=c.price)
            for c, w in zip(picked, bps)
        ]
        snapshot = RebalanceSnapshot(index_id=index_id, timestamp=as_of, constituents=constituents, skipped=skipped)
        snapshot.nav = nav_at_rebalance(snapshot.weights, snapshot.prices)

        if persist:
            async with self._session_factory() as session:
                await stores.upsert_snapshot(session, snapshot)
                await session.commit()

        reasons = Counter(s.reason for s in skipped)
        bg_logger.info(
            f"Index {definition.symbol} @ {as_of}: {len(constituents)} constituents, "
            f"nav={snapshot.nav:.4f}, skipped={dict(reasons)}"
        )
        return snapshot
