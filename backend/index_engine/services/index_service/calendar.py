"""
UTC day arithmetic shared by the eligibility and reconstruction engines.

All day boundaries in the engine go through ``next_utc_midnight``: given any
instant, return the same instant if it is already at UTC midnight, else the
following UTC midnight.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterator

SECONDS_PER_DAY = 86400


def to_datetime(ts: int | float | datetime) -> datetime:
    """Unix seconds (or a datetime) as an aware UTC datetime."""
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            return ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc)
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def to_timestamp(value: datetime | date) -> int:
    if isinstance(value, datetime):
        return int(to_datetime(value).timestamp())
    return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())


def is_utc_midnight(ts: int | float | datetime) -> bool:
    dt = to_datetime(ts)
    return dt.hour == 0 and dt.minute == 0 and dt.second == 0 and dt.microsecond == 0


def utc_midnight_of(ts: int | float | datetime) -> int:
    """Floor an instant to its UTC midnight, as unix seconds."""
    dt = to_datetime(ts)
    return to_timestamp(dt.date())


def next_utc_midnight(ts: int | float | datetime) -> int:
    """Same instant if already at UTC midnight, else the following UTC midnight."""
    if is_utc_midnight(ts):
        return int(to_datetime(ts).timestamp())
    return utc_midnight_of(ts) + SECONDS_PER_DAY


def today_utc_midnight(now: datetime | None = None) -> int:
    return utc_midnight_of(now or datetime.now(timezone.utc))


def day_of(ts: int) -> date:
    return to_datetime(ts).date()


def iter_days(start: int, end: int) -> Iterator[int]:
    """UTC-midnight timestamps in [start, end)."""
    ts = start
    while ts < end:
        yield ts
        ts += SECONDS_PER_DAY


def is_rebalance_day(day: date, anchor: date, interval_days: int) -> bool:
    """True on anchor + k * interval_days for k >= 0."""
    elapsed = (day - anchor).days
    return elapsed >= 0 and elapsed % interval_days == 0
