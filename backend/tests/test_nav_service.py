
import pytest

from conftest import ts

from index_engine.core.exceptions import ConfigurationError
from index_engine.services.index_service import stores
from index_engine.services.index_service.calendar import SECONDS_PER_DAY, day_of, to_datetime
from index_engine.services.index_service.models import Constituent, PricePoint, RebalanceSnapshot
from index_engine.services.index_service.nav import NavService

T0 = ts(2024, 1, 1)
DAY = SECONDS_PER_DAY


async def seed(session_factory, snapshots, prices):
    async with session_factory() as session:
        for snapshot in snapshots:
            await stores.upsert_snapshot(session, snapshot)
        for coin_id, points in prices.items():
            await stores.upsert_prices(session, coin_id, coin_id.upper(), points)
        await session.commit()


def foo_snapshot(timestamp, price, index_id=23):
    return RebalanceSnapshot(
        index_id=index_id,
        timestamp=timestamp,
        constituents=[Constituent("bi.FOOUSDC", "foo", 10000, price)],
    )


def foo_prices():
    # 100 through day 14, 110 afterwards
    return [PricePoint(T0 + d * DAY, 100.0 if d <= 14 else 110.0) for d in range(0, 25)]


def now_at(day_offset):
    return to_datetime(T0 + day_offset * DAY)


@pytest.mark.asyncio
async def test_reconstruct_flat_then_up_ten_percent(session_factory):
    await seed(session_factory, [foo_snapshot(T0, 100.0), foo_snapshot(T0 + 14 * DAY, 100.0)], {"foo": foo_prices()})

    points = await NavService(session_factory).reconstruct(23, now=now_at(19))

    by_day = {p.date: p.price for p in points}
    assert len(points) == 19
    for d in range(0, 15):
        assert by_day[day_of(T0 + d * DAY)] == pytest.approx(10000.0)
    for d in range(15, 19):
        assert by_day[day_of(T0 + d * DAY)] == pytest.approx(11000.0)

    async with session_factory() as session:
        stored = await stores.list_daily_prices(session, 23)
    assert [p.price for p in stored] == [p.price for p in points]
    assert stored[-1].date == day_of(T0 + 18 * DAY)
    assert stored[0].quantities == {"foo": pytest.approx(100.0)}


@pytest.mark.asyncio
async def test_reconstruct_is_idempotent(session_factory):
    await seed(session_factory, [foo_snapshot(T0, 100.0)], {"foo": foo_prices()})
    service = NavService(session_factory)

    first = await service.reconstruct(23, now=now_at(10))
    second = await service.reconstruct(23, now=now_at(10))

    assert len(first) == 10
    assert second == []
    async with session_factory() as session:
        assert len(await stores.list_daily_prices(session, 23)) == 10


@pytest.mark.asyncio
async def test_reconstruct_resumes_from_stored_days(session_factory):
    await seed(session_factory, [foo_snapshot(T0, 100.0), foo_snapshot(T0 + 14 * DAY, 100.0)], {"foo": foo_prices()})
    service = NavService(session_factory)

    await service.reconstruct(23, now=now_at(10))
    resumed = await service.reconstruct(23, now=now_at(19))

    assert len(resumed) == 9
    assert resumed[0].date == day_of(T0 + 10 * DAY)
    async with session_factory() as session:
        stored = await stores.list_daily_prices(session, 23)
    assert len(stored) == 19
    assert stored[-1].price == pytest.approx(11000.0)


@pytest.mark.asyncio
async def test_second_period_anchors_to_carried_nav(session_factory):
    # Price doubles during the first period; the second snapshot re-anchors at 20000
    prices = [PricePoint(T0 + d * DAY, 100.0 if d < 5 else 200.0) for d in range(0, 12)]
    snapshots = [
        foo_snapshot(T0, 100.0),
        RebalanceSnapshot(23, T0 + 7 * DAY, [Constituent("bi.BARUSDC", "bar", 10000, 50.0)]),
    ]
    bar = [PricePoint(T0 + d * DAY, 50.0 if d < 9 else 55.0) for d in range(0, 12)]
    await seed(session_factory, snapshots, {"foo": prices, "bar": bar})

    points = await NavService(session_factory).reconstruct(23, now=now_at(11))

    by_day = {p.date: p.price for p in points}
    assert by_day[day_of(T0 + 6 * DAY)] == pytest.approx(20000.0)
    assert by_day[day_of(T0 + 7 * DAY)] == pytest.approx(20000.0)
    assert by_day[day_of(T0 + 10 * DAY)] == pytest.approx(22000.0)
    assert points[-1].quantities == {"bar": pytest.approx(400.0)}


@pytest.mark.asyncio
async def test_no_snapshots_nothing_to_do(session_factory):
    assert await NavService(session_factory).reconstruct(23, now=now_at(5)) == []


@pytest.mark.asyncio
async def test_latest_period_of_consolidating_index_trades_target_pair(session_factory):
    snapshot = RebalanceSnapshot(
        index_id=21,
        timestamp=T0,
        constituents=[
            Constituent("bi.BTCUSDC", "bitcoin", 5000, 100.0),
            Constituent("bg.FOOUSDT", "foo", 5000, 10.0),
        ],
    )
    await seed(session_factory, [snapshot], {
        "bitcoin": [PricePoint(T0 + d * DAY, 100.0) for d in range(3)],
        "foo": [PricePoint(T0 + d * DAY, 10.0) for d in range(3)],
    })

    points = await NavService(session_factory).reconstruct(21, now=now_at(2))

    assert [p.price for p in points] == [pytest.approx(10000.0)] * 2
    assert points[0].quantities == {"bitcoin": pytest.approx(100.0)}


@pytest.mark.asyncio
async def test_consolidation_without_target_pair_aborts(session_factory):
    snapshot = RebalanceSnapshot(
        index_id=21,
        timestamp=T0,
        constituents=[
            Constituent("bi.ETHUSDC", "ethereum", 5000, 100.0),
            Constituent("bg.FOOUSDT", "foo", 5000, 10.0),
        ],
    )
    await seed(session_factory, [snapshot], {})

    with pytest.raises(ConfigurationError):
        await NavService(session_factory).reconstruct(21, now=now_at(2))


@pytest.mark.asyncio
async def test_only_latest_snapshot_is_consolidated(session_factory):
    first = RebalanceSnapshot(
        index_id=21,
        timestamp=T0,
        constituents=[
            Constituent("bi.BTCUSDC", "bitcoin", 5000, 100.0),
            Constituent("bg.FOOUSDT", "foo", 5000, 10.0),
        ],
    )
    second = RebalanceSnapshot(21, T0 + 2 * DAY, [Constituent("bi.BTCUSDC", "bitcoin", 10000, 100.0)])
    await seed(session_factory, [first, second], {
        "bitcoin": [PricePoint(T0 + d * DAY, 100.0) for d in range(4)],
        "foo": [PricePoint(T0 + d * DAY, 10.0) for d in range(4)],
    })

    points = await NavService(session_factory).reconstruct(21, now=now_at(3))

    assert points[0].quantities == {"bitcoin": pytest.approx(50.0), "foo": pytest.approx(500.0)}
