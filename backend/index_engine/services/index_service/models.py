from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, NamedTuple, Sequence, Tuple

# Bumped whenever the persisted JSON layout of a rebalance changes
SNAPSHOT_SCHEMA_VERSION = 1

TOTAL_BPS = 10000

Weights = List[Tuple[str, int]]


class PricePoint(NamedTuple):
    timestamp: int
    price: float


@dataclass
class Asset:
    """A token from the market-data provider at evaluation time."""
    asset_id: str
    symbol: str
    market_cap: float | None = None
    market_cap_rank: int | None = None
    categories: List[str] = field(default_factory=list)

    @classmethod
    def from_provider(cls, row: Dict[str, Any]) -> "Asset":
        return cls(
            asset_id=(row.get("id") or "").strip(),
            symbol=row.get("symbol") or "",
            market_cap=row.get("market_cap"),
            market_cap_rank=row.get("market_cap_rank"),
            categories=list(row.get("categories") or []),
        )


@dataclass
class ListingRecord:
    """Listing / delisting dates of one pair, per exchange."""
    pair: str
    base_symbol: str
    listing_announcement_date: Dict[str, str] = field(default_factory=dict)
    listing_date: Dict[str, str] = field(default_factory=dict)
    delisting_announcement_date: Dict[str, str] = field(default_factory=dict)
    delisting_date: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Constituent:
    pair: str  # exchange-qualified, e.g. bi.BTCUSDC
    asset_id: str
    weight_bps: int
    price: float


@dataclass(frozen=True)
class SkippedAsset:
    asset_id: str
    symbol: str
    reason: str  # duplicate | no_pair | blacklisted | no_price | below_floor | no_rank | empty_id


@dataclass
class RebalanceSnapshot:
    """
    Constituents and weights of an index at one rebalance timestamp.

    ``weights``, ``coins``, ``prices`` and ``assets`` are views over the same
    ordered constituent list, so they can never disagree.
    """
    index_id: int
    timestamp: int
    constituents: List[Constituent]
    nav: float | None = None
    deployed: bool = False
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    skipped: List[SkippedAsset] = field(default_factory=list, compare=False, repr=False)

    @property
    def weights(self) -> Weights:
        return [(c.pair, c.weight_bps) for c in self.constituents]

    @property
    def coins(self) -> Dict[str, int]:
        return {c.asset_id: c.weight_bps for c in self.constituents}

    @property
    def prices(self) -> Dict[str, float]:
        return {c.pair: c.price for c in self.constituents}

    @property
    def assets(self) -> Dict[str, str]:
        return {c.pair: c.asset_id for c in self.constituents}

    @property
    def total_bps(self) -> int:
        return sum(c.weight_bps for c in self.constituents)

    def with_weights(self, weights: Weights) -> "RebalanceSnapshot":
        """Copy with the weights replaced; pairs must already be constituents."""
        by_pair = {c.pair: c for c in self.constituents}
        return RebalanceSnapshot(
            index_id=self.index_id,
            timestamp=self.timestamp,
            constituents=[
                Constituent(pair=pair, asset_id=by_pair[pair].asset_id, weight_bps=bps, price=by_pair[pair].price)
                for pair, bps in weights
            ],
            nav=self.nav,
            deployed=self.deployed,
            schema_version=self.schema_version,
        )

    def to_record(self) -> Dict[str, Any]:
        """Column values for the rebalances table."""
        return {
            "index_id": self.index_id,
            "timestamp": self.timestamp,
            "schema_version": self.schema_version,
            "weights": [[pair, bps] for pair, bps in self.weights],
            "prices": self.prices,
            "coins": self.coins,
            "assets": self.assets,
            "nav": self.nav,
        }

    @classmethod
    def from_record(cls, row: Any) -> "RebalanceSnapshot":
        """Decode a rebalances row (ORM object or mapping)."""
        get = row.get if isinstance(row, dict) else lambda key, default=None: getattr(row, key, default)

        version = get("schema_version") or 1
        if version > SNAPSHOT_SCHEMA_VERSION:
            raise ValueError(f"Unsupported rebalance schema version {version}")

        prices = get("prices") or {}
        assets = get("assets") or {}
        constituents = []
        for pair, bps in get("weights") or []:
            if pair not in assets:
                raise ValueError(f"Rebalance {get('index_id')}@{get('timestamp')} has no asset for pair {pair}")
            constituents.append(
                Constituent(pair=pair, asset_id=assets[pair], weight_bps=int(bps), price=float(prices.get(pair, 0.0)))
            )

        return cls(
            index_id=int(get("index_id")),
            timestamp=int(get("timestamp")),
            constituents=constituents,
            nav=get("nav"),
            deployed=bool(get("deployed", False)),
            schema_version=version,
        )


@dataclass
class DailyNavPoint:
    index_id: int
    date: date
    price: float
    quantities: Dict[str, float] = field(default_factory=dict)


def find_nearest_price(series: Sequence[PricePoint], ts: int, max_distance: int | None = None) -> float | None:
    """
    Price of the point closest to ``ts`` in a timestamp-sorted series.

    The point at-or-before ``ts`` wins ties. Points farther than
    ``max_distance`` seconds count as missing.
    """
    if not series:
        return None

    idx = bisect_left(series, (ts,))
    before = series[idx - 1] if idx > 0 else None
    after = series[idx] if idx < len(series) else None

    if before is not None and (after is None or ts - before.timestamp <= after.timestamp - ts):
        best = before
    else:
        best = after

    if max_distance is not None and abs(best.timestamp - ts) > max_distance:
        return None
    return best.price
