"""
Strategy signal source contract.

The engine treats a strategy as an opaque, deterministic function from
the bars visible so far to a list of signals. Concrete strategies are
tagged with a StrategyKind rather than arranged in an inheritance tree.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any

from tradesim_engine.backtest.models import PositionSide
from tradesim_engine.domain.bar import Bar
from tradesim_engine.domain.signal import Signal, SignalAction


class StrategyKind(str, Enum):
    """Variant tag for strategy implementations."""

    MOVING_AVERAGE = "moving_average"
    MOMENTUM = "momentum"
    MEAN_REVERSION = "mean_reversion"
    BREAKOUT = "breakout"
    BUY_AND_HOLD = "buy_and_hold"
    CUSTOM = "custom"


class StrategySignalSource(ABC):
    """
    Base class for strategies driven by the simulation loop.

    Implementations must not look ahead (history only contains bars up to
    the current step) and must return the same signals for the same
    history, so walk-forward and Monte Carlo runs are reproducible.
    """

    kind: StrategyKind = StrategyKind.CUSTOM

    def __init__(
        self,
        quantity: float = 100.0,
        stop_loss_pct: float | None = None,
        target_pct: float | None = None,
        trade_short: bool = False,
        warmup_bars: int = 0,
    ):
        if quantity <= 0:
            raise ValueError("quantity must be positive")
        self.quantity = quantity
        self.stop_loss_pct = stop_loss_pct
        self.target_pct = target_pct
        self.trade_short = trade_short
        self.warmup_bars = warmup_bars

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry name."""

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "quantity": self.quantity,
            "stop_loss_pct": self.stop_loss_pct,
            "target_pct": self.target_pct,
            "trade_short": self.trade_short,
            "warmup_bars": self.warmup_bars,
        }

    def generate_signals(
        self,
        history: Mapping[str, Sequence[Bar]],
        timestamp: datetime,
        positions: Mapping[str, PositionSide],
    ) -> list[Signal]:
        """
        Evaluate every symbol with data at this step.

        Args:
            history: Bars per symbol up to and including the current step
            timestamp: Current step key (calendar day in UTC for daily bars)
            positions: Side of the open position per symbol (absent = flat)

        Returns:
            Signals in symbol order
        """
        signals: list[Signal] = []
        for symbol in sorted(history):
            bars = history[symbol]
            if not bars:
                continue
            latest = bars[-1]
            # Compare on the grouping key: a daily bar stamped 15:30 belongs to its day's step
            if latest.timeframe.bucket_key(latest.timestamp) > timestamp:
                continue
            if len(bars) < max(self.warmup_bars, 1):
                continue
            signal = self.evaluate(symbol, bars, positions.get(symbol, PositionSide.FLAT))
            if signal is not None:
                signals.append(signal)
        return signals

    @abstractmethod
    def evaluate(self, symbol: str, bars: Sequence[Bar], position: PositionSide) -> Signal | None:
        """Signal for one symbol given its visible bars, or None to hold."""

    def _entry(self, symbol: str, bar: Bar, action: SignalAction, reason: str) -> Signal:
        """Build an entry signal with percentage stop and target."""
        price = bar.close
        is_long = action == SignalAction.BUY
        stop = target = None
        if self.stop_loss_pct:
            stop = price * (1 - self.stop_loss_pct) if is_long else price * (1 + self.stop_loss_pct)
        if self.target_pct:
            target = price * (1 + self.target_pct) if is_long else price * (1 - self.target_pct)
        return Signal(
            symbol=symbol,
            action=action,
            quantity=self.quantity,
            price=price,
            stop_loss=stop,
            target=target,
            reason=reason,
            metadata={"strategy": self.name},
        )

    def _exit(self, symbol: str, bar: Bar, action: SignalAction, reason: str) -> Signal:
        return Signal(
            symbol=symbol,
            action=action,
            quantity=self.quantity,
            price=bar.close,
            reason=reason,
            metadata={"strategy": self.name},
        )

    def _bullish(self, symbol: str, bar: Bar, position: PositionSide, reason: str) -> Signal | None:
        """Enter long when flat, cover when short."""
        if position == PositionSide.FLAT:
            return self._entry(symbol, bar, SignalAction.BUY, reason)
        if position == PositionSide.SHORT:
            return self._exit(symbol, bar, SignalAction.BUY, reason)
        return None

    def _bearish(self, symbol: str, bar: Bar, position: PositionSide, reason: str) -> Signal | None:
        """Exit long, or enter short when flat and shorting is enabled."""
        if position == PositionSide.LONG:
            return self._exit(symbol, bar, SignalAction.SELL, reason)
        if position == PositionSide.FLAT and self.trade_short:
            return self._entry(symbol, bar, SignalAction.SELL, reason)
        return None
