"""
Daily NAV reconstruction from rebalance snapshots.

Each snapshot opens a period that runs until the next snapshot's day (or
today for the most recent one). Quantities are fixed at the start of the
period from the NAV carried out of the previous period; only prices move
inside it.
"""
from __future__ import annotations

from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from index_engine.core.config import settings
from index_engine.db.database import async_session
from index_engine.services.sync_status import run_status

from . import stores
from .calendar import SECONDS_PER_DAY, day_of, iter_days, next_utc_midnight, today_utc_midnight
from .core import bg_logger
from .models import DailyNavPoint, PricePoint, RebalanceSnapshot, find_nearest_price
from .registry import get_index_definition
from .weights import consolidate_weights

TASK_RECONSTRUCT = "reconstruct"


def compute_quantities(snapshot: RebalanceSnapshot, nav: float) -> Dict[str, float]:
    """Units of each asset worth its weight share of ``nav`` at the snapshot price."""
    total = snapshot.total_bps
    quantities: Dict[str, float] = {}
    if not total:
        return quantities
    for c in snapshot.constituents:
        if not c.price:
            continue
        quantities[c.asset_id] = quantities.get(c.asset_id, 0.0) + (nav * c.weight_bps / total) / c.price
    return quantities


def index_price_for_day(
    quantities: Mapping[str, float],
    series: Mapping[str, Sequence[PricePoint]],
    day_ts: int,
    max_distance: int | None = None,
) -> Optional[float]:
    """Sum of quantity times nearest price; None when no asset has a price."""
    total = 0.0
    priced = False
    for asset_id, quantity in quantities.items():
        price = find_nearest_price(series.get(asset_id) or [], day_ts, max_distance)
        if price is None:
            continue
        total += quantity * price
        priced = True
    return total if priced else None


def period_bounds(snapshot_ts: int, next_snapshot_ts: int | None, today: int) -> Tuple[int, int]:
    """``[start, end)`` of the days priced from one snapshot."""
    start = next_utc_midnight(snapshot_ts)
    end = next_utc_midnight(next_snapshot_ts) if next_snapshot_ts is not None else today
    return start, end


def reconstruct_period(
    index_id: int,
    quantities: Mapping[str, float],
    series: Mapping[str, Sequence[PricePoint]],
    start: int,
    end: int,
    last_nav: float,
    existing: Mapping[date, float] | None = None,
    max_distance: int | None = None,
) -> Tuple[List[DailyNavPoint], float]:
    """
    Price every day of ``[start, end)`` and return the new points with the
    NAV carried out of the period.

    Days already in ``existing`` are not recomputed; their stored price
    becomes the carried NAV. Days where no asset has a price are skipped.
    """
    existing = existing or {}
    points: List[DailyNavPoint] = []
    for day_ts in iter_days(start, end):
        day = day_of(day_ts)
        if day in existing:
            last_nav = existing[day]
            continue

        price = index_price_for_day(quantities, series, day_ts, max_distance)
        if price is None:
            continue

        last_nav = round(price, 2)
        points.append(DailyNavPoint(index_id=index_id, date=day, price=last_nav, quantities=dict(quantities)))
    return points, last_nav


class NavService:
    """Extends the stored daily NAV series of an index."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or async_session

    def effective_snapshot(self, snapshot: RebalanceSnapshot, is_latest: bool) -> RebalanceSnapshot:
        """The latest snapshot of a consolidating index trades only on the primary exchange."""
        definition = get_index_definition(snapshot.index_id)
        if not (is_latest and definition.consolidates):
            return snapshot
        return snapshot.with_weights(
            consolidate_weights(
                snapshot.weights,
                settings.consolidation_source_prefix,
                settings.consolidation_target_pair,
            )
        )

    async def reconstruct(self, index_id: int, now=None) -> List[DailyNavPoint]:
        """
        Compute and store every missing daily point up to yesterday.

        Each point is committed on its own, so an interrupted run keeps its
        progress and the next run resumes from the stored days.
        """
        get_index_definition(index_id)
        today = today_utc_midnight(now)
        pad = settings.max_price_distance_days * SECONDS_PER_DAY

        async with self._session_factory() as session:
            snapshots = await stores.list_snapshots(session, index_id)
        if not snapshots:
            bg_logger.info(f"Index {index_id}: no rebalances, nothing to reconstruct")
            return []

        last_nav = settings.base_nav
        written: List[DailyNavPoint] = []

        for i, snapshot in enumerate(snapshots):
            is_latest = i == len(snapshots) - 1
            next_ts = None if is_latest else snapshots[i + 1].timestamp
            start, end = period_bounds(snapshot.timestamp, next_ts, today)

            quantities = compute_quantities(self.effective_snapshot(snapshot, is_latest), last_nav)
            if start >= end or not quantities:
                continue

            async with self._session_factory() as session:
                series = await stores.select_price_range(session, quantities.keys(), start - pad, end + pad)
                existing = await stores.existing_days(session, index_id, day_of(start), day_of(end))

            points, last_nav = reconstruct_period(
                index_id, quantities, series, start, end, last_nav, existing, max_distance=pad
            )

            async with self._session_factory() as session:
                for point in points:
                    await stores.upsert_daily_price(session, point)
                    await session.commit()

            written.extend(points)
            run_status.update_progress(TASK_RECONSTRUCT, index_id, (i + 1) / len(snapshots))

        bg_logger.info(f"Index {index_id}: stored {len(written)} daily points, last nav {last_nav}")
        return written
