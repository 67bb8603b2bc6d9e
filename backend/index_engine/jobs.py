"""
Command-line entry point for scheduled engine runs.

    python -m index_engine.jobs daily
    python -m index_engine.jobs rebalance 21 --date 2024-06-09
    python -m index_engine.jobs simulate 23 --start 2019-01-01
    python -m index_engine.jobs reconstruct --all
    python -m index_engine.jobs sync-prices
    python -m index_engine.jobs sync-whitelist
"""
import argparse
import asyncio
import json
import sys
from datetime import date, datetime, timezone

from index_engine.core.exceptions import IndexEngineError
from index_engine.core.logging_config import setup_logging, get_main_logger
from index_engine.db.database import engine, Base
import index_engine.db.models  # Ensure models are registered
from index_engine.services.index_service import IndexService, index_service
from index_engine.services.index_service.calendar import to_timestamp, today_utc_midnight


def _parse_date(value: str) -> int:
    return to_timestamp(date.fromisoformat(value))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="index_engine.jobs", description="Index engine jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("rebalance", help="Compute one rebalance snapshot")
    p.add_argument("index_id", type=int)
    when = p.add_mutually_exclusive_group()
    when.add_argument("--timestamp", type=int, help="Unix seconds (default: today's UTC midnight)")
    when.add_argument("--date", type=_parse_date, dest="timestamp", help="YYYY-MM-DD, UTC")
    p.add_argument("--target-count", type=int, default=None)

    p = sub.add_parser("simulate", help="Backfill snapshots from listing events")
    p.add_argument("index_id", type=int)
    p.add_argument("--start", type=_parse_date, required=True, help="YYYY-MM-DD, UTC")

    p = sub.add_parser("reconstruct", help="Extend the daily NAV series")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("index_id", type=int, nargs="?")
    target.add_argument("--all", action="store_true")

    sub.add_parser("daily", help="Run the scheduled daily job")
    sub.add_parser("sync-prices", help="Extend stored price series up to today")
    sub.add_parser("sync-whitelist", help="Refresh the primary exchange whitelist")
    return parser


async def run(args: argparse.Namespace, service: IndexService = index_service) -> dict:
    if args.command == "rebalance":
        ts = args.timestamp if args.timestamp is not None else today_utc_midnight()
        snapshot = await service.rebalance(args.index_id, ts, target_count=args.target_count)
        return {"index_id": snapshot.index_id, "timestamp": snapshot.timestamp,
                "constituents": len(snapshot.constituents), "nav": snapshot.nav}

    if args.command == "simulate":
        snapshots = await service.simulate_rebalances(args.index_id, args.start)
        return {"index_id": args.index_id, "rebalances": [s.timestamp for s in snapshots]}

    if args.command == "reconstruct":
        ids = [d.index_id for d in service.list_indices()] if args.all else [args.index_id]
        result, failed = {}, {}
        for index_id in ids:
            try:
                result[index_id] = len(await service.reconstruct(index_id))
            except IndexEngineError as e:
                get_main_logger().error(f"Reconstruction of index {index_id} failed, continuing: {e}")
                failed[index_id] = str(e)
        return {"reconstructed": result, "failed": failed}

    if args.command == "daily":
        return await service.run_daily(datetime.now(timezone.utc))

    if args.command == "sync-prices":
        return {"prices_stored": await service.sync_prices()}

    if args.command == "sync-whitelist":
        diff = await service.sync_whitelist()
        return {"pairs": diff.total, "listings": diff.listings, "delistings": diff.delistings}

    raise ValueError(f"Unknown command {args.command}")


async def _main(args: argparse.Namespace) -> dict:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        return await run(args)
    finally:
        await index_service.market_data.aclose()
        await engine.dispose()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    logger = get_main_logger()
    try:
        result = asyncio.run(_main(args))
    except IndexEngineError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    print(json.dumps(result, indent=2, default=str))
    # Partial failures exit non-zero
    return 1 if result.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
