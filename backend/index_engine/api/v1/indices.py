"""
Index composition and daily price endpoints.
"""
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.responses import Response
from pydantic import BaseModel

from index_engine.core.deps import require_api_key
from index_engine.core.logging_config import get_main_logger
from index_engine.services.index_service import TASK_REBALANCE, index_service
from index_engine.services.index_service.calendar import today_utc_midnight
from index_engine.services.index_service.models import RebalanceSnapshot
from index_engine.services.index_service.nav import TASK_RECONSTRUCT
from index_engine.services.sync_status import run_status

logger = get_main_logger()

router = APIRouter(prefix="/indices", tags=["indices"])


class IndexInfo(BaseModel):
    """A managed index."""
    index_id: int
    symbol: str
    name: str
    mode: str
    category: Optional[str] = None


class IndexListResponse(BaseModel):
    indices: List[IndexInfo]
    count: int


class WeightItem(BaseModel):
    pair: str
    weight_bps: int


class RebalanceResponse(BaseModel):
    """One rebalance snapshot."""
    index_id: int
    timestamp: int
    nav: Optional[float] = None
    deployed: bool = False
    schema_version: int
    weights: List[WeightItem]
    prices: Dict[str, float]
    coins: Dict[str, int]
    skipped: Optional[Dict[str, int]] = None  # reason -> count, only on fresh runs


class RebalanceListResponse(BaseModel):
    rebalances: List[RebalanceResponse]
    count: int


class HoldingItem(BaseModel):
    name: str
    percentage: float


class HoldingsSummary(BaseModel):
    top10: float
    top20: float
    top50: float


class TopHoldingsResponse(BaseModel):
    index_id: int
    timestamp: int
    holdings: List[HoldingItem]
    summary: HoldingsSummary
    total_holdings: int


class DailyPriceItem(BaseModel):
    date: date
    price: float
    quantities: Dict[str, float] = {}


class DailyPricesResponse(BaseModel):
    index_id: int
    prices: List[DailyPriceItem]
    count: int


class ReconstructResponse(BaseModel):
    index_id: int
    status: str


def _rebalance_response(snapshot: RebalanceSnapshot, include_skips: bool = False) -> RebalanceResponse:
    skipped = None
    if include_skips:
        skipped = {}
        for s in snapshot.skipped:
            skipped[s.reason] = skipped.get(s.reason, 0) + 1
    return RebalanceResponse(
        index_id=snapshot.index_id,
        timestamp=snapshot.timestamp,
        nav=snapshot.nav,
        deployed=snapshot.deployed,
        schema_version=snapshot.schema_version,
        weights=[WeightItem(pair=pair, weight_bps=bps) for pair, bps in snapshot.weights],
        prices=snapshot.prices,
        coins=snapshot.coins,
        skipped=skipped,
    )


async def _reconstruct_in_background(index_id: int) -> None:
    try:
        await index_service.reconstruct(index_id)
    except Exception as e:
        logger.error(f"Background reconstruction of index {index_id} failed: {e}")
        if run_status.is_running(TASK_RECONSTRUCT, index_id):
            run_status.complete(TASK_RECONSTRUCT, index_id, success=False, error=str(e))


@router.get("", response_model=IndexListResponse)
async def list_indices():
    """
    Get all managed indices.
    """
    indices = index_service.list_indices()
    return IndexListResponse(
        indices=[
            IndexInfo(index_id=d.index_id, symbol=d.symbol, name=d.name, mode=d.mode, category=d.category)
            for d in indices
        ],
        count=len(indices)
    )


@router.get("/{index_id}/rebalances", response_model=RebalanceListResponse)
async def get_rebalances(index_id: int):
    """
    Get every stored rebalance of an index, oldest first.
    """
    snapshots = await index_service.get_rebalances(index_id)
    return RebalanceListResponse(
        rebalances=[_rebalance_response(s) for s in snapshots],
        count=len(snapshots)
    )


@router.get("/{index_id}/rebalances/latest", response_model=RebalanceResponse)
async def get_latest_rebalance(index_id: int):
    """
    Get the most recent rebalance as it is currently traded.
    """
    snapshot = await index_service.get_latest_rebalance(index_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No rebalance found for index {index_id}")
    return _rebalance_response(snapshot)


@router.get("/{index_id}/top-holdings", response_model=TopHoldingsResponse)
async def get_top_holdings(index_id: int):
    holdings = await index_service.top_holdings(index_id)
    if holdings is None:
        raise HTTPException(status_code=404, detail=f"No rebalance found for index {index_id}")
    return TopHoldingsResponse(**holdings)


@router.get("/{index_id}/daily-prices", response_model=DailyPricesResponse)
async def get_daily_prices(index_id: int, start: Optional[date] = None, end: Optional[date] = None):
    """
    Get the reconstructed daily NAV series, optionally bounded by date.
    """
    points = await index_service.get_daily_prices(index_id, start, end)
    return DailyPricesResponse(
        index_id=index_id,
        prices=[DailyPriceItem(date=p.date, price=p.price, quantities=p.quantities) for p in points],
        count=len(points)
    )


@router.get("/{index_id}/export/rebalances.csv")
async def export_rebalances(index_id: int):
    content = await index_service.export_rebalances_csv(index_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="index_{index_id}_rebalances.csv"'},
    )


@router.get("/{index_id}/export/daily-prices.csv")
async def export_daily_prices(index_id: int):
    content = await index_service.export_daily_prices_csv(index_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="index_{index_id}_daily_prices.csv"'},
    )


@router.post("/{index_id}/rebalance", response_model=RebalanceResponse, dependencies=[Depends(require_api_key)])
async def trigger_rebalance(index_id: int, timestamp: Optional[int] = None):
    """
    Compute and store the snapshot at ``timestamp`` (default: today's UTC midnight).
    """
    index_service.get_index(index_id)
    if run_status.is_running(TASK_REBALANCE, index_id):
        raise HTTPException(status_code=409, detail=f"Rebalance of index {index_id} is already running")
    snapshot = await index_service.rebalance(index_id, timestamp if timestamp is not None else today_utc_midnight())
    return _rebalance_response(snapshot, include_skips=True)


@router.post(
    "/{index_id}/reconstruct",
    response_model=ReconstructResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_api_key)],
)
async def trigger_reconstruct(index_id: int, background_tasks: BackgroundTasks):
    """
    Extend the daily series in the background. Progress is reported by /sync/status.
    """
    index_service.get_index(index_id)
    if run_status.is_running(TASK_RECONSTRUCT, index_id):
        raise HTTPException(status_code=409, detail=f"Reconstruction of index {index_id} is already running")
    # Claimed before scheduling so a second request sees it
    run_status.start(TASK_RECONSTRUCT, index_id)
    background_tasks.add_task(_reconstruct_in_background, index_id)
    return ReconstructResponse(index_id=index_id, status="scheduled")
