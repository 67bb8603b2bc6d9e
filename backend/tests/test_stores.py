from datetime import date

import pytest
from sqlalchemy import func, select

from conftest import ts

from index_engine.db.models import DailyPrice, Rebalance
from index_engine.services.index_service import stores
from index_engine.services.index_service.calendar import SECONDS_PER_DAY
from index_engine.services.index_service.models import (
    Constituent,
    DailyNavPoint,
    ListingRecord,
    PricePoint,
    RebalanceSnapshot,
)

T0 = ts(2024, 1, 1)


def snapshot(nav, price=100.0):
    return RebalanceSnapshot(
        index_id=23,
        timestamp=T0,
        constituents=[Constituent("bi.FOOUSDC", "foo", 10000, price)],
        nav=nav,
    )


@pytest.mark.asyncio
async def test_snapshot_upsert_overwrites_same_key(session_factory):
    async with session_factory() as session:
        await stores.upsert_snapshot(session, snapshot(100.0))
        await session.commit()
        await stores.upsert_snapshot(session, snapshot(105.0, price=105.0))
        await session.commit()

    async with session_factory() as session:
        count = (await session.execute(select(func.count()).select_from(Rebalance))).scalar_one()
        latest = await stores.latest_snapshot(session, 23)

    assert count == 1
    assert latest == snapshot(105.0, price=105.0)


@pytest.mark.asyncio
async def test_snapshots_listed_oldest_first(session_factory):
    later = RebalanceSnapshot(23, T0 + SECONDS_PER_DAY, [Constituent("bi.BARUSDC", "bar", 10000, 1.0)])
    async with session_factory() as session:
        await stores.upsert_snapshot(session, later)
        await stores.upsert_snapshot(session, snapshot(100.0))
        await session.commit()

        listed = await stores.list_snapshots(session, 23)
        assert [s.timestamp for s in listed] == [T0, T0 + SECONDS_PER_DAY]
        assert (await stores.latest_snapshot(session, 23)).timestamp == T0 + SECONDS_PER_DAY
        assert await stores.get_snapshot(session, 23, T0) == snapshot(100.0)
        assert await stores.latest_snapshot(session, 24) is None


@pytest.mark.asyncio
async def test_daily_price_upsert_is_idempotent(session_factory):
    point = DailyNavPoint(index_id=23, date=date(2024, 1, 2), price=10000.0, quantities={"foo": 100.0})
    async with session_factory() as session:
        await stores.upsert_daily_price(session, point)
        await stores.upsert_daily_price(session, point)
        await session.commit()
        count = (await session.execute(select(func.count()).select_from(DailyPrice))).scalar_one()
        days = await stores.existing_days(session, 23, date(2024, 1, 1), date(2024, 1, 3))

    assert count == 1
    assert days == {date(2024, 1, 2): 10000.0}


@pytest.mark.asyncio
async def test_price_range_grouped_and_sorted(session_factory):
    async with session_factory() as session:
        await stores.upsert_prices(session, "foo", "FOO", [PricePoint(T0 + 2 * SECONDS_PER_DAY, 3.0), PricePoint(T0, 1.0)])
        await stores.upsert_prices(session, "bar", "BAR", [PricePoint(T0, 7.0)])
        await session.commit()

        series = await stores.select_price_range(session, ["foo", "bar", "baz"], T0, T0 + SECONDS_PER_DAY * 2)

    assert series["foo"] == [PricePoint(T0, 1.0), PricePoint(T0 + 2 * SECONDS_PER_DAY, 3.0)]
    assert series["bar"] == [PricePoint(T0, 7.0)]
    assert series["baz"] == []


@pytest.mark.asyncio
async def test_price_lookups(session_factory):
    async with session_factory() as session:
        await stores.upsert_prices(session, "foo", "FOO", [PricePoint(T0, 1.0)])
        await stores.upsert_prices(session, "foo", "FOO", [PricePoint(T0, 1.5)])
        await session.commit()

        assert await stores.get_exact_price(session, "foo", T0) == 1.5
        assert await stores.get_exact_price(session, "foo", T0 + SECONDS_PER_DAY) is None
        assert await stores.get_nearest_price(session, "foo", T0 + 5 * SECONDS_PER_DAY, 30 * SECONDS_PER_DAY) == 1.5
        assert await stores.get_nearest_price(session, "foo", T0 + 40 * SECONDS_PER_DAY, 30 * SECONDS_PER_DAY) is None
        assert await stores.has_prices(session, "foo")
        assert not await stores.has_prices(session, "bar")
        assert await stores.latest_price_timestamps(session) == {"foo": ("FOO", T0)}


@pytest.mark.asyncio
async def test_listing_records_round_trip(session_factory):
    record = ListingRecord(
        pair="fooUSDC",
        base_symbol="foo",
        listing_date={"binance": "2024-01-01"},
        delisting_announcement_date={"bitget": "2024-06-01"},
    )
    async with session_factory() as session:
        await stores.upsert_listing_record(session, record)
        await session.commit()
        loaded = await stores.load_listing_records(session)

    assert list(loaded) == ["FOOUSDC"]
    assert loaded["FOOUSDC"].base_symbol == "FOO"
    assert loaded["FOOUSDC"].listing_date == {"binance": "2024-01-01"}
    assert loaded["FOOUSDC"].delisting_date == {}


@pytest.mark.asyncio
async def test_whitelist_is_replaced(session_factory):
    async with session_factory() as session:
        await stores.replace_whitelist(session, "binance", [{"pair": "fooUSDC"}, {"pair": "BARUSDT"}])
        await session.commit()
        await stores.replace_whitelist(session, "binance", [{"pair": "BARUSDT"}, {"pair": "BAZUSDC", "status": "BREAK"}])
        await session.commit()

        assert await stores.load_whitelist(session, "binance") == {"BARUSDT"}


@pytest.mark.asyncio
async def test_categories_cache(session_factory):
    async with session_factory() as session:
        assert await stores.get_categories(session, "foo") is None
        await stores.set_categories(session, "foo", ["Meme"])
        await stores.set_categories(session, "foo", ["Meme", "Solana Ecosystem"])
        await session.commit()
        assert await stores.get_categories(session, "foo") == ["Meme", "Solana Ecosystem"]
