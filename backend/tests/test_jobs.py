from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import ts

from index_engine import jobs
from index_engine.core.exceptions import ConfigurationError, NoEligibleConstituentsError
from index_engine.services.index_service.exchanges import WhitelistDiff
from index_engine.services.index_service.models import Constituent, RebalanceSnapshot
from index_engine.services.index_service.registry import list_index_definitions


def mock_service():
    service = MagicMock()
    service.list_indices.return_value = list_index_definitions()
    service.reconstruct = AsyncMock(return_value=[object(), object()])
    service.rebalance = AsyncMock(return_value=RebalanceSnapshot(
        index_id=21,
        timestamp=ts(2024, 6, 9),
        constituents=[Constituent("bi.BTCUSDC", "bitcoin", 10000, 67000.0)],
        nav=6.7,
    ))
    service.simulate_rebalances = AsyncMock(return_value=[])
    service.sync_prices = AsyncMock(return_value=12)
    service.sync_whitelist = AsyncMock(return_value=WhitelistDiff(total=3, listings=["SOLUSDC"]))
    service.run_daily = AsyncMock(return_value={"rebalanced": []})
    return service


def test_rebalance_date_argument_is_utc_midnight():
    args = jobs.build_parser().parse_args(["rebalance", "21", "--date", "2024-06-09"])
    assert args.index_id == 21
    assert args.timestamp == ts(2024, 6, 9)


def test_reconstruct_requires_target():
    with pytest.raises(SystemExit):
        jobs.build_parser().parse_args(["reconstruct"])


@pytest.mark.asyncio
async def test_run_rebalance():
    service = mock_service()
    args = jobs.build_parser().parse_args(["rebalance", "21", "--timestamp", str(ts(2024, 6, 9)), "--target-count", "50"])

    result = await jobs.run(args, service)

    service.rebalance.assert_awaited_once_with(21, ts(2024, 6, 9), target_count=50)
    assert result == {"index_id": 21, "timestamp": ts(2024, 6, 9), "constituents": 1, "nav": 6.7}


@pytest.mark.asyncio
async def test_run_reconstruct_all():
    service = mock_service()
    args = jobs.build_parser().parse_args(["reconstruct", "--all"])

    result = await jobs.run(args, service)

    assert result == {"reconstructed": {21: 2, 22: 2, 23: 2, 24: 2, 25: 2, 27: 2}, "failed": {}}


@pytest.mark.asyncio
async def test_run_reconstruct_all_continues_past_failing_index():
    service = mock_service()

    async def reconstruct(index_id):
        if index_id == 21:
            raise ConfigurationError("bi.BTCUSDC is not a constituent")
        return [object()]

    service.reconstruct = AsyncMock(side_effect=reconstruct)

    result = await jobs.run(jobs.build_parser().parse_args(["reconstruct", "--all"]), service)

    assert result["failed"] == {21: "bi.BTCUSDC is not a constituent"}
    assert result["reconstructed"] == {22: 1, 23: 1, 24: 1, 25: 1, 27: 1}


def test_main_fails_on_partial_failure():
    report = {"reconstructed": {23: 1}, "failed": {21: "boom"}}
    with patch.object(jobs, "_main", new=AsyncMock(return_value=report)):
        assert jobs.main(["reconstruct", "--all"]) == 1


@pytest.mark.asyncio
async def test_run_simulate_and_maintenance():
    service = mock_service()
    parser = jobs.build_parser()

    assert await jobs.run(parser.parse_args(["simulate", "23", "--start", "2019-01-01"]), service) == {
        "index_id": 23, "rebalances": []
    }
    service.simulate_rebalances.assert_awaited_once_with(23, ts(2019, 1, 1))
    assert await jobs.run(parser.parse_args(["sync-prices"]), service) == {"prices_stored": 12}
    assert await jobs.run(parser.parse_args(["sync-whitelist"]), service) == {
        "pairs": 3, "listings": ["SOLUSDC"], "delistings": []
    }


def test_main_reports_engine_errors():
    with patch.object(jobs, "_main", new=AsyncMock(side_effect=NoEligibleConstituentsError(21, 0))):
        assert jobs.main(["rebalance", "21"]) == 1
