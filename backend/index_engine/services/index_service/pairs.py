"""
Pair resolution against the listing directory and the primary exchange whitelist.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Dict, Iterable, List, Mapping, Optional

import pandas as pd

from .calendar import next_utc_midnight
from .core import logger
from .models import ListingRecord

PRIMARY_EXCHANGE = "binance"
SECONDARY_EXCHANGE = "bitget"

EXCHANGE_PREFIXES = {
    PRIMARY_EXCHANGE: "bi.",
    SECONDARY_EXCHANGE: "bg.",
}

QUOTE_PREFERENCE = ("USDC", "USDT")

# Scraped announcements carry a trailing zone such as "(UTC)" or "(UTC+8)"
_UTC_SUFFIX = re.compile(r"\s*\(\s*UTC\s*(?:([+-])\s*(\d{1,2})(?::?(\d{2}))?)?\s*\)\s*$", re.IGNORECASE)


@lru_cache(maxsize=4096)
def parse_listing_date(value: str | None) -> Optional[int]:
    """
    Listing directory date as unix seconds; naive values are UTC.

    Accepts ISO strings as well as scraped forms like
    ``"2024-05-01 10:00 (UTC)"`` or ``"1 May 2024, 10:00 (UTC+8)"``.
    Unparseable values are treated as absent.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    offset = 0
    match = _UTC_SUFFIX.search(text)
    if match:
        text = text[:match.start()]
        sign, hours, minutes = match.groups()
        if sign:
            offset = (int(hours) * 3600 + int(minutes or 0) * 60) * (-1 if sign == "-" else 1)

    parsed = pd.to_datetime(text, utc=True, errors="coerce")
    if pd.isna(parsed):
        logger.warning(f"Ignoring unparseable listing date {value!r}")
        return None
    return int(parsed.timestamp()) - offset


def _date_for(dates: Mapping[str, str] | None, exchange: str) -> Optional[int]:
    if not dates:
        return None
    return parse_listing_date(dates.get(exchange))


def listing_event_ts(record: ListingRecord, exchange: str) -> Optional[int]:
    """Effective listing date if known, else the announcement date."""
    effective = _date_for(record.listing_date, exchange)
    if effective is not None:
        return effective
    return _date_for(record.listing_announcement_date, exchange)


def delisting_event_ts(record: ListingRecord, exchange: str) -> Optional[int]:
    """Effective delisting date if known, else the announcement date."""
    effective = _date_for(record.delisting_date, exchange)
    if effective is not None:
        return effective
    return _date_for(record.delisting_announcement_date, exchange)


def is_listed_as_of(record: ListingRecord | None, exchange: str, as_of: int) -> bool:
    """
    A pair is listed as of ``as_of`` when its listing event on ``exchange``
    is at or before ``as_of`` and no delisting event is.

    Effective dates take precedence over announcement dates for both events.
    A pair with no listing date at all is not listed.
    """
    if record is None:
        return False

    delisted_at = delisting_event_ts(record, exchange)
    if delisted_at is not None and delisted_at <= as_of:
        return False

    listed_at = listing_event_ts(record, exchange)
    return listed_at is not None and listed_at <= as_of


class PairResolver:
    """Picks the best tradable pair for a base symbol at a point in time."""

    def __init__(self, listings: Mapping[str, ListingRecord], whitelist: Iterable[str]):
        self.listings = {pair.upper(): record for pair, record in listings.items()}
        self.whitelist = {pair.upper() for pair in whitelist}

    def resolve(self, symbol: str, as_of: int) -> Optional[str]:
        """
        Exchange-qualified pair for ``symbol`` or None.

        Order: primary USDC, primary USDT (both must also be whitelisted),
        then secondary USDC, secondary USDT.
        """
        symbol = symbol.upper()

        for quote in QUOTE_PREFERENCE:
            pair = f"{symbol}{quote}"
            if pair in self.whitelist and is_listed_as_of(self.listings.get(pair), PRIMARY_EXCHANGE, as_of):
                return EXCHANGE_PREFIXES[PRIMARY_EXCHANGE] + pair

        for quote in QUOTE_PREFERENCE:
            pair = f"{symbol}{quote}"
            if is_listed_as_of(self.listings.get(pair), SECONDARY_EXCHANGE, as_of):
                return EXCHANGE_PREFIXES[SECONDARY_EXCHANGE] + pair

        return None


def strip_pair(pair: str) -> str:
    """``bi.BTCUSDC`` -> ``BTC``."""
    name = pair.split(".", 1)[1] if "." in pair else pair
    for quote in QUOTE_PREFERENCE:
        if name.endswith(quote):
            return name[: -len(quote)]
    return name


def rebalance_dates_from_listing_events(
    records: Mapping[str, ListingRecord],
    whitelist: Iterable[str],
    start: int,
    now: int,
    symbols: Iterable[str] | None = None,
) -> List[int]:
    """
    Rebalance timestamps implied by primary-exchange listing activity.

    Returns the normalized ``start`` followed by every listing and delisting
    event in ``[start, now]`` of whitelisted pairs, each moved to the next UTC
    midnight, sorted and de-duplicated. ``symbols`` restricts the scan to
    those base symbols (e.g. a category's tokens).
    """
    whitelist = {pair.upper() for pair in whitelist}
    records = {pair.upper(): record for pair, record in records.items()}

    if symbols is None:
        candidates = {record.base_symbol.upper() for record in records.values()}
    else:
        candidates = {s.upper() for s in symbols}

    chosen: Dict[str, ListingRecord] = {}
    for symbol in candidates:
        for quote in QUOTE_PREFERENCE:
            pair = f"{symbol}{quote}"
            if pair in whitelist and pair in records:
                chosen[symbol] = records[pair]
                break

    dates = {next_utc_midnight(start)}
    for record in chosen.values():
        for event in (listing_event_ts(record, PRIMARY_EXCHANGE), delisting_event_ts(record, PRIMARY_EXCHANGE)):
            if event is not None and start <= event <= now:
                dates.add(next_utc_midnight(event))

    return sorted(dates)
