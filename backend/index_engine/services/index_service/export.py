"""CSV export of stored rebalances and daily prices."""
from __future__ import annotations

import json
from typing import List

import pandas as pd

from .calendar import to_datetime
from .models import DailyNavPoint, RebalanceSnapshot

REBALANCE_COLUMNS = ["index_id", "timestamp", "date", "nav", "weights", "prices", "coins"]
DAILY_PRICE_COLUMNS = ["index_id", "date", "price", "quantities"]


def rebalances_frame(snapshots: List[RebalanceSnapshot]) -> pd.DataFrame:
    rows = [
        {
            "index_id": s.index_id,
            "timestamp": s.timestamp,
            "date": to_datetime(s.timestamp).strftime("%Y-%m-%d"),
            "nav": s.nav,
            "weights": json.dumps([[pair, bps] for pair, bps in s.weights]),
            "prices": json.dumps(s.prices),
            "coins": json.dumps(s.coins),
        }
        for s in snapshots
    ]
    return pd.DataFrame(rows, columns=REBALANCE_COLUMNS)


def daily_prices_frame(points: List[DailyNavPoint]) -> pd.DataFrame:
    rows = [
        {
            "index_id": p.index_id,
            "date": p.date.isoformat(),
            "price": p.price,
            "quantities": json.dumps(p.quantities),
        }
        for p in points
    ]
    return pd.DataFrame(rows, columns=DAILY_PRICE_COLUMNS)


def to_csv(df: pd.DataFrame) -> str:
    return df.to_csv(index=False)
