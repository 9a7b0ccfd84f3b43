"""
Bar stream grouping.

Turns an unordered multi-symbol list of bars into chronologically ordered
time steps so the simulation can advance one instant at a time across
all symbols simultaneously.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import NamedTuple

from tradesim_engine.backtest.errors import NoHistoricalDataError
from tradesim_engine.domain.bar import Bar, Timeframe
from tradesim_engine.logging import get_logger

logger = get_logger(__name__)


class TimeStep(NamedTuple):
    """All bars sharing one grouping key, ordered by symbol."""

    timestamp: datetime
    bars: tuple[Bar, ...]

    def bar_for(self, symbol: str) -> Bar | None:
        for bar in self.bars:
            if bar.symbol == symbol:
                return bar
        return None

    @property
    def prices(self) -> dict[str, float]:
        return {bar.symbol: bar.close for bar in self.bars}


def group_bars(
    bars: Iterable[Bar],
    timeframe: Timeframe,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[TimeStep]:
    """
    Group bars into ascending time steps.

    Args:
        bars: Bars in any order, any mix of symbols
        timeframe: Determines the grouping key (exact instant or calendar day)
        start: Inclusive lower bound, compared against the raw bar timestamp
        end: Inclusive upper bound

    Returns:
        Time steps with strictly increasing, unique timestamps

    Raises:
        NoHistoricalDataError: If no bar survives the range filter
    """
    buckets: dict[datetime, dict[str, Bar]] = {}
    seen = 0

    for bar in bars:
        seen += 1
        if start is not None and bar.timestamp < start:
            continue
        if end is not None and bar.timestamp > end:
            continue

        key = timeframe.bucket_key(bar.timestamp)
        bucket = buckets.setdefault(key, {})
        existing = bucket.get(bar.symbol)
        # Several intraday bars in one daily bucket: the latest one wins
        if existing is None or bar.timestamp >= existing.timestamp:
            bucket[bar.symbol] = bar

    if not buckets:
        raise NoHistoricalDataError(
            f"No historical data in range {start} to {end} ({seen} bars supplied)"
        )

    steps = [
        TimeStep(key, tuple(bucket[symbol] for symbol in sorted(bucket)))
        for key, bucket in sorted(buckets.items())
    ]

    logger.debug("Grouped %d bars into %d time steps", seen, len(steps))
    return steps
