"""
Run status API endpoints.
"""
from fastapi import APIRouter
from pydantic import BaseModel
from typing import List, Optional

from index_engine.core.circuit_breaker import provider_circuit_breaker
from index_engine.services.sync_status import run_status

router = APIRouter(prefix="/sync", tags=["sync"])


class RunStatusItem(BaseModel):
    """Status of one task for one index."""
    task: str
    index_id: int
    is_running: bool
    last_run: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    progress: float = 0.0
    summary: Optional[str] = None


class RateLimitStatus(BaseModel):
    is_limited: bool = False
    reset_at: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Response model for sync status endpoint."""
    runs: List[RunStatusItem]
    rate_limit: RateLimitStatus
    circuit_breaker: dict


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status():
    """
    Get current status of rebalance and reconstruction runs.
    """
    status = run_status.get_status_dict()
    return SyncStatusResponse(
        runs=[RunStatusItem(**run) for run in status["runs"]],
        rate_limit=RateLimitStatus(**status["rate_limit"]),
        circuit_breaker=provider_circuit_breaker.get_stats(),
    )
