"""Index service package facade."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List

from index_engine.core.config import settings
from index_engine.core.exceptions import IndexEngineError, NoEligibleConstituentsError
from index_engine.core.logging_config import log_background_start, log_background_complete, log_background_error
from index_engine.db.database import async_session
from index_engine.services.sync_status import run_status

from . import stores
from .calendar import is_rebalance_day, today_utc_midnight
from .core import logger
from .eligibility import EligibilityService
from .exchanges import ExchangePairSync, WhitelistDiff
from .export import daily_prices_frame, rebalances_frame, to_csv
from .market_data import MarketDataClient
from .models import DailyNavPoint, RebalanceSnapshot
from .nav import NavService, TASK_RECONSTRUCT
from .pairs import PRIMARY_EXCHANGE, rebalance_dates_from_listing_events, strip_pair
from .registry import BROAD, IndexDefinition, get_index_definition, list_index_definitions

TASK_REBALANCE = "rebalance"


class IndexService:
    """Facade service that composes the engine's sub-services."""

    def __init__(self, session_factory=None, market_data: MarketDataClient | None = None) -> None:
        self._session_factory = session_factory or async_session
        self.market_data = market_data or MarketDataClient(session_factory=self._session_factory)
        self.eligibility = EligibilityService(market_data=self.market_data, session_factory=self._session_factory)
        self.nav = NavService(session_factory=self._session_factory)
        self.exchanges = ExchangePairSync(session_factory=self._session_factory)

    # Registry
    def list_indices(self) -> List[IndexDefinition]:
        return list_index_definitions()

    def get_index(self, index_id: int) -> IndexDefinition:
        return get_index_definition(index_id)

    # Rebalancing
    async def rebalance(self, index_id: int, timestamp: int, target_count: int | None = None) -> RebalanceSnapshot:
        """Compute and store one snapshot, tracking the run."""
        get_index_definition(index_id)
        task = f"rebalance index {index_id} @ {timestamp}"
        run_status.start(TASK_REBALANCE, index_id)
        log_background_start(task)
        try:
            snapshot = await self.eligibility.compute_weights(index_id, timestamp, target_count=target_count)
        except Exception as e:
            run_status.complete(TASK_REBALANCE, index_id, success=False, error=str(e))
            log_background_error(task, str(e))
            raise
        summary = f"{len(snapshot.constituents)} constituents, {len(snapshot.skipped)} skipped"
        run_status.complete(TASK_REBALANCE, index_id, success=True, summary=summary)
        log_background_complete(task, summary)
        return snapshot

    async def simulate_rebalances(self, index_id: int, start: int, now: int | None = None) -> List[RebalanceSnapshot]:
        """
        Backfill a thematic index with one snapshot per listing event.

        Dates where nothing is eligible are logged and skipped.
        """
        definition = get_index_definition(index_id)
        now = now if now is not None else today_utc_midnight()

        async with self._session_factory() as session:
            listings = await stores.load_listing_records(session)
            whitelist = await stores.load_whitelist(session, PRIMARY_EXCHANGE)

        symbols = None
        if definition.mode != BROAD:
            tokens = await self.market_data.list_category_tokens(definition.category)
            symbols = [t.symbol for t in tokens if t.symbol]

        dates = rebalance_dates_from_listing_events(listings, whitelist, start, now, symbols=symbols)
        logger.info(f"Index {definition.symbol}: simulating {len(dates)} rebalances")

        snapshots = []
        for ts in dates:
            try:
                snapshots.append(await self.rebalance(index_id, ts))
            except NoEligibleConstituentsError as e:
                logger.warning(str(e))
        return snapshots

    # Reconstruction
    async def reconstruct(self, index_id: int, now=None) -> List[DailyNavPoint]:
        get_index_definition(index_id)
        task = f"reconstruct index {index_id}"
        run_status.start(TASK_RECONSTRUCT, index_id)
        log_background_start(task)
        try:
            points = await self.nav.reconstruct(index_id, now=now)
        except Exception as e:
            run_status.complete(TASK_RECONSTRUCT, index_id, success=False, error=str(e))
            log_background_error(task, str(e))
            raise
        summary = f"{len(points)} new daily points"
        run_status.complete(TASK_RECONSTRUCT, index_id, success=True, summary=summary)
        log_background_complete(task, summary)
        return points

    # Maintenance
    async def sync_prices(self, now=None) -> int:
        return await self.market_data.sync_missing_prices(now)

    async def sync_whitelist(self) -> WhitelistDiff:
        return await self.exchanges.sync_whitelist()

    async def run_daily(self, now: datetime | None = None) -> Dict[str, Any]:
        """
        The scheduled daily job: refresh prices and the whitelist, rebalance
        broad indices on cadence days, then extend every daily series.

        Indices are independent: an engine error on one is recorded under
        ``failed`` and the remaining indices still run.
        """
        now = now or datetime.now(timezone.utc)
        today = today_utc_midnight(now)
        report: Dict[str, Any] = {"rebalanced": [], "reconstructed": {}, "failed": {}}

        def record_failure(index_id: int, step: str, error: Exception) -> None:
            logger.error(f"Daily {step} of index {index_id} failed, continuing: {error}")
            report["failed"].setdefault(index_id, []).append(f"{step}: {error}")

        report["prices_stored"] = await self.sync_prices(now)
        try:
            report["whitelist_pairs"] = (await self.sync_whitelist()).total
        except Exception as e:
            logger.error(f"Whitelist sync failed, keeping stored pairs: {e}")

        anchor = date.fromisoformat(settings.rebalance_anchor_date)
        if is_rebalance_day(now.date(), anchor, settings.rebalance_interval_days):
            for definition in self.list_indices():
                if definition.mode != BROAD:
                    continue
                try:
                    await self.rebalance(definition.index_id, today)
                except IndexEngineError as e:
                    record_failure(definition.index_id, TASK_REBALANCE, e)
                    continue
                report["rebalanced"].append(definition.index_id)

        for definition in self.list_indices():
            try:
                points = await self.reconstruct(definition.index_id, now=now)
            except IndexEngineError as e:
                record_failure(definition.index_id, TASK_RECONSTRUCT, e)
                continue
            report["reconstructed"][definition.index_id] = len(points)
        return report

    # Reads
    async def get_rebalances(self, index_id: int) -> List[RebalanceSnapshot]:
        get_index_definition(index_id)
        async with self._session_factory() as session:
            return await stores.list_snapshots(session, index_id)

    async def get_latest_rebalance(self, index_id: int) -> RebalanceSnapshot | None:
        """Most recent snapshot with terminal consolidation applied."""
        get_index_definition(index_id)
        async with self._session_factory() as session:
            snapshot = await stores.latest_snapshot(session, index_id)
        if snapshot is None:
            return None
        return self.nav.effective_snapshot(snapshot, is_latest=True)

    async def top_holdings(self, index_id: int) -> Dict[str, Any] | None:
        snapshot = await self.get_latest_rebalance(index_id)
        if snapshot is None:
            return None

        holdings = [
            {"name": strip_pair(pair), "percentage": round(bps / 100, 2)}
            for pair, bps in snapshot.weights
        ]

        def top(count: int) -> float:
            return round(sum(h["percentage"] for h in holdings[:count]), 2)

        return {
            "index_id": index_id,
            "timestamp": snapshot.timestamp,
            "holdings": holdings[:10],
            "summary": {"top10": top(10), "top20": top(20), "top50": top(50)},
            "total_holdings": len(holdings),
        }

    async def get_daily_prices(
        self, index_id: int, start: date | None = None, end: date | None = None
    ) -> List[DailyNavPoint]:
        get_index_definition(index_id)
        async with self._session_factory() as session:
            return await stores.list_daily_prices(session, index_id, start, end)

    async def export_rebalances_csv(self, index_id: int) -> str:
        return to_csv(rebalances_frame(await self.get_rebalances(index_id)))

    async def export_daily_prices_csv(self, index_id: int) -> str:
        return to_csv(daily_prices_frame(await self.get_daily_prices(index_id)))


# Global singleton instance
index_service = IndexService()
