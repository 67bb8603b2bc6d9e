"""
Persistence for prices, listings, snapshots and the daily series.

Every write is an ``INSERT ... ON CONFLICT DO UPDATE`` on the table's natural
key. Functions take an open session and never commit; the caller owns the
transaction boundary.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, func, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from index_engine.db.models import (
    CryptoListing,
    DailyPrice,
    ExchangePair,
    HistoricalPrice,
    Rebalance,
    TokenCategory,
)

from .models import DailyNavPoint, ListingRecord, PricePoint, RebalanceSnapshot, find_nearest_price

# Rows per multi-row insert
_UPSERT_CHUNK = 500


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert
    return postgresql.insert


async def upsert(
    session: AsyncSession,
    model,
    rows: Sequence[dict],
    index_elements: List[str],
    update_fields: List[str],
) -> None:
    """Upsert ``rows`` into ``model`` on its unique ``index_elements``."""
    if not rows:
        return
    insert = _insert_for(session)
    for start in range(0, len(rows), _UPSERT_CHUNK):
        stmt = insert(model).values(list(rows[start:start + _UPSERT_CHUNK]))
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={name: stmt.excluded[name] for name in update_fields},
        )
        await session.execute(stmt)


# --- Price Store -----------------------------------------------------------

async def upsert_prices(session: AsyncSession, coin_id: str, symbol: str, points: Iterable[PricePoint]) -> int:
    rows = {}
    for point in points:
        rows[int(point.timestamp)] = {
            "coin_id": coin_id,
            "symbol": symbol,
            "timestamp": int(point.timestamp),
            "price": float(point.price),
        }
    await upsert(session, HistoricalPrice, list(rows.values()), ["coin_id", "timestamp"], ["price", "symbol"])
    return len(rows)


async def select_price_range(
    session: AsyncSession, coin_ids: Iterable[str], start: int, end: int
) -> Dict[str, List[PricePoint]]:
    """Stored prices in ``[start, end]`` grouped per coin, sorted by timestamp."""
    coin_ids = list(set(coin_ids))
    series: Dict[str, List[PricePoint]] = {coin_id: [] for coin_id in coin_ids}
    if not coin_ids:
        return series

    stmt = (
        select(HistoricalPrice.coin_id, HistoricalPrice.timestamp, HistoricalPrice.price)
        .where(
            HistoricalPrice.coin_id.in_(coin_ids),
            HistoricalPrice.timestamp >= start,
            HistoricalPrice.timestamp <= end,
        )
        .order_by(HistoricalPrice.coin_id, HistoricalPrice.timestamp)
    )
    result = await session.execute(stmt)
    for coin_id, ts, price in result.all():
        series[coin_id].append(PricePoint(int(ts), float(price)))
    return series


async def get_exact_price(session: AsyncSession, coin_id: str, ts: int) -> Optional[float]:
    stmt = select(HistoricalPrice.price).where(
        HistoricalPrice.coin_id == coin_id,
        HistoricalPrice.timestamp == ts,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_nearest_price(session: AsyncSession, coin_id: str, ts: int, tolerance: int) -> Optional[float]:
    """Closest stored price within ``tolerance`` seconds of ``ts``."""
    series = await select_price_range(session, [coin_id], ts - tolerance, ts + tolerance)
    return find_nearest_price(series[coin_id], ts, max_distance=tolerance)


async def has_prices(session: AsyncSession, coin_id: str) -> bool:
    stmt = select(HistoricalPrice.id).where(HistoricalPrice.coin_id == coin_id).limit(1)
    return (await session.execute(stmt)).first() is not None


async def latest_price_timestamps(session: AsyncSession) -> Dict[str, tuple[str, int]]:
    """``{coin_id: (symbol, latest timestamp)}`` for every stored coin."""
    stmt = (
        select(HistoricalPrice.coin_id, func.max(HistoricalPrice.symbol), func.max(HistoricalPrice.timestamp))
        .group_by(HistoricalPrice.coin_id)
    )
    result = await session.execute(stmt)
    return {coin_id: (symbol, int(ts)) for coin_id, symbol, ts in result.all()}


# --- Token categories ------------------------------------------------------

async def get_categories(session: AsyncSession, coin_id: str) -> Optional[List[str]]:
    stmt = select(TokenCategory.categories).where(TokenCategory.coin_id == coin_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def set_categories(session: AsyncSession, coin_id: str, categories: List[str]) -> None:
    await upsert(
        session,
        TokenCategory,
        [{"coin_id": coin_id, "categories": list(categories), "updated_at": datetime.utcnow()}],
        ["coin_id"],
        ["categories", "updated_at"],
    )


# --- Listing Directory / Exchange Whitelist --------------------------------

def _listing_from_row(row: CryptoListing) -> ListingRecord:
    return ListingRecord(
        pair=row.token,
        base_symbol=row.token_name,
        listing_announcement_date=row.listing_announcement_date or {},
        listing_date=row.listing_date or {},
        delisting_announcement_date=row.delisting_announcement_date or {},
        delisting_date=row.delisting_date or {},
    )


async def load_listing_records(session: AsyncSession) -> Dict[str, ListingRecord]:
    """All listing records keyed by pair string (e.g. ``BTCUSDC``)."""
    rows = (await session.execute(select(CryptoListing))).scalars().all()
    return {row.token.upper(): _listing_from_row(row) for row in rows}


async def upsert_listing_record(session: AsyncSession, record: ListingRecord) -> None:
    await upsert(
        session,
        CryptoListing,
        [{
            "token": record.pair.upper(),
            "token_name": record.base_symbol.upper(),
            "listing_announcement_date": record.listing_announcement_date,
            "listing_date": record.listing_date,
            "delisting_announcement_date": record.delisting_announcement_date,
            "delisting_date": record.delisting_date,
            "updated_at": datetime.utcnow(),
        }],
        ["token"],
        [
            "token_name",
            "listing_announcement_date",
            "listing_date",
            "delisting_announcement_date",
            "delisting_date",
            "updated_at",
        ],
    )


async def load_whitelist(session: AsyncSession, exchange: str = "binance") -> set[str]:
    stmt = select(ExchangePair.pair).where(
        ExchangePair.exchange == exchange,
        ExchangePair.status == "TRADING",
    )
    return {pair.upper() for pair in (await session.execute(stmt)).scalars().all()}


async def replace_whitelist(session: AsyncSession, exchange: str, pairs: Sequence[dict]) -> int:
    """Replace the stored pairs of ``exchange`` with ``pairs`` (``pair``, ``quote_asset``, ``status``)."""
    await session.execute(delete(ExchangePair).where(ExchangePair.exchange == exchange))
    now = datetime.utcnow()
    rows = {
        p["pair"].upper(): {
            "exchange": exchange,
            "pair": p["pair"].upper(),
            "quote_asset": p.get("quote_asset"),
            "status": p.get("status") or "TRADING",
            "fetched_at": now,
        }
        for p in pairs
    }
    await upsert(session, ExchangePair, list(rows.values()), ["exchange", "pair"], ["quote_asset", "status", "fetched_at"])
    return len(rows)


# --- Snapshot Store --------------------------------------------------------

async def upsert_snapshot(session: AsyncSession, snapshot: RebalanceSnapshot) -> None:
    record = snapshot.to_record()
    record["updated_at"] = datetime.utcnow()
    await upsert(
        session,
        Rebalance,
        [record],
        ["index_id", "timestamp"],
        ["schema_version", "weights", "prices", "coins", "assets", "nav", "updated_at"],
    )


async def list_snapshots(session: AsyncSession, index_id: int) -> List[RebalanceSnapshot]:
    """All snapshots of an index, oldest first."""
    stmt = select(Rebalance).where(Rebalance.index_id == index_id).order_by(Rebalance.timestamp)
    rows = (await session.execute(stmt)).scalars().all()
    return [RebalanceSnapshot.from_record(row) for row in rows]


async def get_snapshot(session: AsyncSession, index_id: int, ts: int) -> Optional[RebalanceSnapshot]:
    stmt = select(Rebalance).where(Rebalance.index_id == index_id, Rebalance.timestamp == ts)
    row = (await session.execute(stmt)).scalar_one_or_none()
    return RebalanceSnapshot.from_record(row) if row is not None else None


async def latest_snapshot(session: AsyncSession, index_id: int) -> Optional[RebalanceSnapshot]:
    stmt = (
        select(Rebalance)
        .where(Rebalance.index_id == index_id)
        .order_by(Rebalance.timestamp.desc())
        .limit(1)
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    return RebalanceSnapshot.from_record(row) if row is not None else None


# --- Daily Price Store -----------------------------------------------------

async def upsert_daily_price(session: AsyncSession, point: DailyNavPoint) -> None:
    await upsert(
        session,
        DailyPrice,
        [{
            "index_id": point.index_id,
            "date": point.date,
            "price": point.price,
            "quantities": point.quantities,
            "updated_at": datetime.utcnow(),
        }],
        ["index_id", "date"],
        ["price", "quantities", "updated_at"],
    )


async def existing_days(session: AsyncSession, index_id: int, start: date, end: date) -> Dict[date, float]:
    """Stored ``{date: price}`` for ``start <= date < end``."""
    stmt = select(DailyPrice.date, DailyPrice.price).where(
        DailyPrice.index_id == index_id,
        DailyPrice.date >= start,
        DailyPrice.date < end,
    )
    return {day: float(price) for day, price in (await session.execute(stmt)).all()}


async def list_daily_prices(
    session: AsyncSession,
    index_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[DailyNavPoint]:
    stmt = select(DailyPrice).where(DailyPrice.index_id == index_id)
    if start is not None:
        stmt = stmt.where(DailyPrice.date >= start)
    if end is not None:
        stmt = stmt.where(DailyPrice.date <= end)
    rows = (await session.execute(stmt.order_by(DailyPrice.date))).scalars().all()
    return [
        DailyNavPoint(index_id=row.index_id, date=row.date, price=row.price, quantities=row.quantities or {})
        for row in rows
    ]
