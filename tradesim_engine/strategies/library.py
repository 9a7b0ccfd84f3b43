"""
Reference strategies.

Small, deterministic rule sets used to exercise the engine end to end.
"""

from collections.abc import Sequence

from tradesim_engine.backtest.models import PositionSide
from tradesim_engine.domain.bar import Bar
from tradesim_engine.domain.signal import Signal, SignalAction
from tradesim_engine.strategies.base import StrategyKind, StrategySignalSource
from tradesim_engine.strategies.indicators import (
    crossover,
    crossunder,
    highest,
    lowest,
    rate_of_change,
    rsi,
    sma,
)


class MovingAverageCrossStrategy(StrategySignalSource):
    """
    Fast/slow simple moving average crossover.

    Entry: fast SMA crosses above slow SMA.
    Exit: fast SMA crosses below slow SMA.
    """

    kind = StrategyKind.MOVING_AVERAGE

    def __init__(self, fast_period: int = 10, slow_period: int = 30, **kwargs):
        if fast_period >= slow_period:
            raise ValueError("fast_period must be shorter than slow_period")
        kwargs.setdefault("warmup_bars", slow_period + 1)
        super().__init__(**kwargs)
        self.fast_period = fast_period
        self.slow_period = slow_period

    @property
    def name(self) -> str:
        return "moving_average_cross"

    def evaluate(self, symbol: str, bars: Sequence[Bar], position: PositionSide) -> Signal | None:
        closes = [b.close for b in bars]
        idx = len(closes) - 1
        fast = sma(closes, self.fast_period)
        slow = sma(closes, self.slow_period)

        if crossover(fast, slow, idx):
            return self._bullish(symbol, bars[-1], position, "golden_cross")
        if crossunder(fast, slow, idx):
            return self._bearish(symbol, bars[-1], position, "death_cross")
        return None


class MomentumStrategy(StrategySignalSource):
    """Rate-of-change momentum: buy strength above threshold, sell weakness below -threshold."""

    kind = StrategyKind.MOMENTUM

    def __init__(self, lookback: int = 10, threshold: float = 0.02, **kwargs):
        kwargs.setdefault("warmup_bars", lookback + 1)
        super().__init__(**kwargs)
        self.lookback = lookback
        self.threshold = threshold

    @property
    def name(self) -> str:
        return "momentum"

    def evaluate(self, symbol: str, bars: Sequence[Bar], position: PositionSide) -> Signal | None:
        roc = rate_of_change([b.close for b in bars], self.lookback)[-1]
        if roc > self.threshold:
            return self._bullish(symbol, bars[-1], position, "momentum_up")
        if roc < -self.threshold:
            return self._bearish(symbol, bars[-1], position, "momentum_down")
        return None


class RsiReversionStrategy(StrategySignalSource):
    """RSI mean reversion: buy oversold, sell overbought."""

    kind = StrategyKind.MEAN_REVERSION

    def __init__(self, period: int = 14, oversold: float = 30.0, overbought: float = 70.0, **kwargs):
        if not 0 < oversold < overbought < 100:
            raise ValueError("require 0 < oversold < overbought < 100")
        kwargs.setdefault("warmup_bars", period + 1)
        super().__init__(**kwargs)
        self.period = period
        self.oversold = oversold
        self.overbought = overbought

    @property
    def name(self) -> str:
        return "rsi_reversion"

    def evaluate(self, symbol: str, bars: Sequence[Bar], position: PositionSide) -> Signal | None:
        value = rsi([b.close for b in bars], self.period)[-1]
        if value < self.oversold:
            return self._bullish(symbol, bars[-1], position, "oversold")
        if value > self.overbought:
            return self._bearish(symbol, bars[-1], position, "overbought")
        return None


class ChannelBreakoutStrategy(StrategySignalSource):
    """Close beyond the prior N-bar high (entry) or low (exit)."""

    kind = StrategyKind.BREAKOUT

    def __init__(self, lookback: int = 20, **kwargs):
        kwargs.setdefault("warmup_bars", lookback + 1)
        super().__init__(**kwargs)
        self.lookback = lookback

    @property
    def name(self) -> str:
        return "channel_breakout"

    def evaluate(self, symbol: str, bars: Sequence[Bar], position: PositionSide) -> Signal | None:
        prior = len(bars) - 2
        upper = highest([b.high for b in bars], self.lookback, prior)
        lower = lowest([b.low for b in bars], self.lookback, prior)
        close = bars[-1].close

        if close > upper:
            return self._bullish(symbol, bars[-1], position, "breakout_high")
        if close < lower:
            return self._bearish(symbol, bars[-1], position, "breakout_low")
        return None


class BuyAndHoldStrategy(StrategySignalSource):
    """Buy on the first visible bar of each symbol and hold to the end of the period."""

    kind = StrategyKind.BUY_AND_HOLD

    @property
    def name(self) -> str:
        return "buy_and_hold"

    def evaluate(self, symbol: str, bars: Sequence[Bar], position: PositionSide) -> Signal | None:
        if len(bars) == 1 and position == PositionSide.FLAT:
            return self._entry(symbol, bars[-1], SignalAction.BUY, "initial_entry")
        return None
