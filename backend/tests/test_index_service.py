from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from conftest import FakeMarketData, make_asset, seed_listings, ts

from index_engine.services.index_service import IndexService, stores
from index_engine.services.index_service.models import Constituent, PricePoint, RebalanceSnapshot
from index_engine.services.index_service.nav import TASK_RECONSTRUCT
from index_engine.services.sync_status import run_status


@pytest.fixture
def service(session_factory):
    return IndexService(session_factory=session_factory, market_data=FakeMarketData())


@pytest.mark.asyncio
async def test_simulate_rebalances_follows_listing_events(service, session_factory):
    await seed_listings(session_factory, ["OP"], listed="2022-06-01")
    await seed_listings(session_factory, ["ARB"], listed="2023-03-23")
    await seed_listings(session_factory, ["MATIC"], listed="2021-01-01")
    service.market_data.category_tokens = [make_asset("arbitrum", "arb"), make_asset("optimism", "op")]
    service.market_data.prices = {"arbitrum": 1.2, "optimism": 2.5}

    snapshots = await service.simulate_rebalances(23, ts(2022, 1, 1), now=ts(2024, 1, 1))

    # Nothing in the category was listed on the start date, so that date is skipped
    assert [s.timestamp for s in snapshots] == [ts(2022, 6, 1), ts(2023, 3, 23)]
    assert snapshots[0].weights == [("bi.OPUSDC", 10000)]
    assert snapshots[1].weights == [("bi.ARBUSDC", 5000), ("bi.OPUSDC", 5000)]
    assert [s.timestamp for s in await service.get_rebalances(23)] == [ts(2022, 6, 1), ts(2023, 3, 23)]


@pytest.mark.asyncio
async def test_run_daily_rebalances_broad_index_on_cadence_day(service):
    with patch.object(service, "sync_prices", return_value=4), \
            patch.object(service, "sync_whitelist", side_effect=httpx.ConnectError("down")), \
            patch.object(service, "rebalance") as rebalance, \
            patch.object(service, "reconstruct", return_value=[]) as reconstruct:
        report = await service.run_daily(datetime(2024, 6, 9, 0, 30, tzinfo=timezone.utc))

    rebalance.assert_awaited_once_with(21, ts(2024, 6, 9))
    assert report["rebalanced"] == [21]
    assert report["prices_stored"] == 4
    assert "whitelist_pairs" not in report
    assert report["reconstructed"] == {21: 0, 22: 0, 23: 0, 24: 0, 25: 0, 27: 0}
    assert reconstruct.await_count == 6


@pytest.mark.asyncio
async def test_run_daily_skips_rebalance_off_cadence(service):
    with patch.object(service, "sync_prices", return_value=0), \
            patch.object(service, "sync_whitelist") as sync_whitelist, \
            patch.object(service, "rebalance") as rebalance, \
            patch.object(service, "reconstruct", return_value=[]):
        sync_whitelist.return_value.total = 812
        report = await service.run_daily(datetime(2024, 6, 10, 0, 30, tzinfo=timezone.utc))

    rebalance.assert_not_awaited()
    assert report["rebalanced"] == []
    assert report["whitelist_pairs"] == 812


async def store_snapshot(session_factory, index_id, timestamp, pair, asset_id, price):
    snapshot = RebalanceSnapshot(
        index_id=index_id,
        timestamp=timestamp,
        constituents=[Constituent(pair=pair, asset_id=asset_id, weight_bps=10000, price=price)],
        nav=price,
    )
    async with session_factory() as session:
        await stores.upsert_snapshot(session, snapshot)
        await session.commit()


@pytest.mark.asyncio
async def test_run_daily_keeps_going_after_an_index_fails(service, session_factory):
    # Index 21 consolidates its latest snapshot but holds no bi.BTCUSDC
    await store_snapshot(session_factory, 21, ts(2024, 6, 1), "bg.FOOUSDC", "foo", 1.0)
    await store_snapshot(session_factory, 23, ts(2024, 6, 1), "bi.BARUSDC", "bar", 2.0)
    async with session_factory() as session:
        await stores.upsert_prices(
            session, "bar", "bar", [PricePoint(ts(2024, 6, day), 2.0 + day / 10) for day in range(1, 5)]
        )
        await session.commit()

    with patch.object(service, "sync_prices", return_value=0), \
            patch.object(service, "sync_whitelist") as sync_whitelist:
        sync_whitelist.return_value.total = 1
        report = await service.run_daily(datetime(2024, 6, 5, 0, 30, tzinfo=timezone.utc))

    assert list(report["failed"]) == [21]
    assert "bi.BTCUSDC" in report["failed"][21][0]
    assert 21 not in report["reconstructed"]
    assert report["reconstructed"][23] == 4
    assert report["reconstructed"][27] == 0
    assert run_status.get(TASK_RECONSTRUCT, 21).error is not None
    assert len(await service.get_daily_prices(23)) == 4
