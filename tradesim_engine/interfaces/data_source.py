"""
MarketDataSource interface.

Defines the contract the engine uses to load historical bars.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import datetime

from tradesim_engine.domain.bar import Bar, Timeframe


class MarketDataSource(ABC):
    """
    Abstract base class for historical bar sources.

    Calls are synchronous: the engine loads everything it needs before the
    simulation loop starts.
    """

    @abstractmethod
    def get_bars(
        self,
        symbols: Sequence[str],
        start: datetime,
        end: datetime,
        timeframe: Timeframe,
    ) -> list[Bar]:
        """
        Get historical bars for several symbols.

        Args:
            symbols: Instrument symbols
            start: Start datetime (UTC, inclusive)
            end: End datetime (UTC, inclusive)
            timeframe: Bar timeframe

        Returns:
            Bars in any order; the engine sorts and groups them.
        """


class InMemoryDataSource(MarketDataSource):
    """Serves bars held in memory. Used by tests and offline analyses."""

    def __init__(self, bars: Iterable[Bar] = ()):
        self._bars: list[Bar] = list(bars)

    def add_bars(self, bars: Iterable[Bar]) -> None:
        self._bars.extend(bars)

    def get_bars(
        self,
        symbols: Sequence[str],
        start: datetime,
        end: datetime,
        timeframe: Timeframe,
    ) -> list[Bar]:
        wanted = set(symbols)
        return [
            bar
            for bar in self._bars
            if bar.symbol in wanted
            and bar.timeframe == timeframe
            and start <= bar.timestamp <= end
        ]
