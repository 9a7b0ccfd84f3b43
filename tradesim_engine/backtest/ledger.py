"""
Position ledger for backtesting.

Tracks cash, open positions (at most one per symbol) and closed trades
with fee-aware accounting.

Cash model:
- LONG entry debits price * qty + entry fees; exit credits exit * qty - exit fees.
- SHORT entry reserves entry * qty + entry fees as collateral; exit releases
  (2 * entry - exit) * qty - exit fees.
Either way, cash after all positions close equals
initial_cash + sum(gross_pnl - fees).
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from tradesim_engine.backtest.errors import CollaboratorError
from tradesim_engine.backtest.fees import FeeCalculator, FeeQuote, ZeroFeeCalculator
from tradesim_engine.backtest.greeks import greeks_for_bar
from tradesim_engine.backtest.models import (
    ExitReason,
    FeeAccounting,
    Greeks,
    PositionSide,
    TradeRecord,
)
from tradesim_engine.domain.bar import Bar
from tradesim_engine.domain.signal import Signal, SignalAction
from tradesim_engine.logging import get_logger

logger = get_logger(__name__)


@dataclass
class OpenPosition:
    """An open position in the ledger."""

    trade_id: str
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    entry_time: datetime
    entry_fees: float = 0.0
    stop_loss: float | None = None
    target: float | None = None
    entry_greeks: Greeks | None = None
    unrealized_pnl: float = 0.0
    mae: float = 0.0  # Maximum Adverse Excursion
    mfe: float = 0.0  # Maximum Favorable Excursion
    bars_held: int = 0

    @property
    def is_long(self) -> bool:
        return self.side == PositionSide.LONG

    @property
    def exit_action(self) -> SignalAction:
        return SignalAction.SELL if self.is_long else SignalAction.BUY

    def gross_pnl(self, price: float) -> float:
        if self.is_long:
            return (price - self.entry_price) * self.quantity
        return (self.entry_price - price) * self.quantity

    def market_value(self, price: float) -> float:
        """Cash the position would release if closed at price, before exit fees."""
        return self.entry_price * self.quantity + self.gross_pnl(price)

    def update_unrealized_pnl(self, current_price: float) -> float:
        """Update unrealized PnL and track MAE/MFE."""
        self.unrealized_pnl = self.gross_pnl(current_price)

        if self.unrealized_pnl < self.mae:
            self.mae = self.unrealized_pnl
        if self.unrealized_pnl > self.mfe:
            self.mfe = self.unrealized_pnl

        return self.unrealized_pnl

    def should_stop_loss(self, current_price: float) -> bool:
        """Check if stop loss should trigger."""
        if self.stop_loss is None:
            return False
        if self.is_long:
            return current_price <= self.stop_loss
        return current_price >= self.stop_loss

    def should_take_profit(self, current_price: float) -> bool:
        """Check if the target should trigger."""
        if self.target is None:
            return False
        if self.is_long:
            return current_price >= self.target
        return current_price <= self.target


@dataclass
class PositionLedger:
    """
    Ledger of cash, open positions and closed trades for one run.

    Invariants:
    - at most one open position per symbol
    - an entry never commits more than the available cash
    """

    initial_cash: float
    strategy: str = "unknown"
    fee_calculator: FeeCalculator = field(default_factory=ZeroFeeCalculator)
    fee_accounting: FeeAccounting = FeeAccounting.NET
    risk_free_rate: float = 0.0
    max_position_pct: float | None = None
    run_id: str | None = None
    cash: float = field(init=False)
    positions: dict[str, OpenPosition] = field(default_factory=dict)
    closed_trades: list[TradeRecord] = field(default_factory=list)
    last_bars: dict[str, Bar] = field(default_factory=dict)
    _sequence: int = 0

    def __post_init__(self) -> None:
        self.cash = self.initial_cash

    @property
    def equity(self) -> float:
        """Cash plus the marked value of every open position."""
        return self.cash + sum(
            pos.market_value(self.last_price(pos.symbol) or pos.entry_price)
            for pos in self.positions.values()
        )

    @property
    def realized_pnl(self) -> float:
        return sum(t.net_pnl for t in self.closed_trades)

    def last_price(self, symbol: str) -> float | None:
        bar = self.last_bars.get(symbol)
        return bar.close if bar is not None else None

    def has_position(self, symbol: str) -> bool:
        return symbol in self.positions

    def get_position(self, symbol: str) -> OpenPosition | None:
        return self.positions.get(symbol)

    def _quote(self, price: float, quantity: float, action: SignalAction) -> FeeQuote:
        try:
            return self.fee_calculator.quote(price, quantity, action)
        except Exception as e:
            raise CollaboratorError(
                f"Fee calculator failed for {action.value} {quantity} @ {price}: {e}",
                collaborator="fee_calculator",
                run_id=self.run_id,
            ) from e

    def _size(self, requested: float, price: float, action: SignalAction) -> tuple[float, FeeQuote]:
        """
        Largest quantity <= requested whose cost plus fees fits in available cash.

        If the capped quantity does not fit once fees are added, bisects over
        whole units. Fees are assumed not to decrease as quantity grows.
        """
        budget = self.cash if self.max_position_pct is None else self.cash * self.max_position_pct
        quantity = min(requested, math.floor(budget / price)) if budget > 0 else 0.0
        if quantity <= 0:
            return 0.0, FeeQuote(total_fees=0.0)

        def _fits(qty: float) -> tuple[bool, FeeQuote]:
            quote = self._quote(price, qty, action)
            return price * qty + quote.total_fees <= self.cash, quote

        fits, quote = _fits(quantity)
        if fits:
            return quantity, quote

        lo, hi = 0, math.ceil(quantity) - 1
        best = FeeQuote(total_fees=0.0)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            fits, mid_quote = _fits(mid)
            if fits:
                lo, best = mid, mid_quote
            else:
                hi = mid - 1

        return float(lo), best

    def open(
        self,
        symbol: str,
        signal: Signal,
        price: float,
        timestamp: datetime,
        side: PositionSide = PositionSide.LONG,
    ) -> OpenPosition | None:
        """
        Open a position sized from the signal.

        Returns None (and logs) if a position is already open for the symbol
        or if not even one unit is affordable.
        """
        if symbol in self.positions:
            logger.warning("Position already open for %s, entry ignored", symbol)
            return None

        action = SignalAction.BUY if side == PositionSide.LONG else SignalAction.SELL
        quantity, quote = self._size(signal.quantity, price, action)
        if quantity <= 0:
            logger.warning(
                "Insufficient cash for %s: %.2f available, price %.4f", symbol, self.cash, price
            )
            return None

        self._sequence += 1
        bar = self.last_bars.get(symbol)
        position = OpenPosition(
            trade_id=f"{symbol}-{self._sequence:05d}",
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=price,
            entry_time=timestamp,
            entry_fees=quote.total_fees,
            stop_loss=signal.stop_loss,
            target=signal.target,
            entry_greeks=greeks_for_bar(bar, timestamp, self.risk_free_rate) if bar else None,
        )
        self.cash -= price * quantity + quote.total_fees
        self.positions[symbol] = position

        logger.debug(
            "Opened %s %s: %.4f @ %.4f (fees %.2f)",
            side.value,
            symbol,
            quantity,
            price,
            quote.total_fees,
        )
        return position

    def close(
        self,
        symbol: str,
        exit_price: float,
        timestamp: datetime,
        reason: ExitReason = ExitReason.SIGNAL,
    ) -> TradeRecord | None:
        """Close the open position for symbol. Returns None (and logs) if there is none."""
        position = self.positions.get(symbol)
        if position is None:
            logger.warning("No position to close for %s", symbol)
            return None

        quote = self._quote(exit_price, position.quantity, position.exit_action)
        gross_pnl = position.gross_pnl(exit_price)
        fees = position.entry_fees + quote.total_fees
        pnl = gross_pnl - fees if self.fee_accounting == FeeAccounting.NET else gross_pnl
        notional = position.entry_price * position.quantity

        position.update_unrealized_pnl(exit_price)
        bar = self.last_bars.get(symbol)
        exit_greeks = (
            greeks_for_bar(bar, timestamp, self.risk_free_rate)
            if bar is not None and position.entry_greeks is not None
            else None
        )

        trade = TradeRecord(
            trade_id=position.trade_id,
            symbol=symbol,
            strategy=self.strategy,
            side=position.side,
            entry_time=position.entry_time,
            exit_time=timestamp,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            entry_fees=position.entry_fees,
            exit_fees=quote.total_fees,
            fees=fees,
            gross_pnl=gross_pnl,
            pnl=pnl,
            pnl_pct=pnl / notional if notional > 0 else 0.0,
            mae=position.mae,
            mfe=position.mfe,
            bars_held=position.bars_held,
            exit_reason=reason,
            stop_loss=position.stop_loss,
            target=position.target,
            entry_greeks=position.entry_greeks,
            exit_greeks=exit_greeks,
        )

        self.cash += position.market_value(exit_price) - quote.total_fees
        self.closed_trades.append(trade)
        del self.positions[symbol]

        logger.debug(
            "Closed %s %s (%s): PnL=%.2f (%.2f%%)",
            position.side.value,
            symbol,
            reason.value,
            pnl,
            trade.pnl_pct * 100,
        )
        return trade

    def mark_to_market(self, bars: Iterable[Bar]) -> None:
        """Record the latest bars and revalue open positions."""
        for bar in bars:
            self.last_bars[bar.symbol] = bar
            position = self.positions.get(bar.symbol)
            if position is not None:
                position.update_unrealized_pnl(bar.close)

    def increment_bars_held(self) -> None:
        """Increment bars held for all open positions."""
        for pos in self.positions.values():
            pos.bars_held += 1

    def check_exits(self, timestamp: datetime, prices: dict[str, float]) -> list[TradeRecord]:
        """Close positions whose stop-loss or target is touched by the step's close."""
        trades: list[TradeRecord] = []

        for symbol, position in list(self.positions.items()):
            current_price = prices.get(symbol)
            if current_price is None:
                continue

            reason: ExitReason | None = None
            if position.should_stop_loss(current_price):
                reason = ExitReason.STOP_LOSS
            elif position.should_take_profit(current_price):
                reason = ExitReason.TARGET

            if reason is not None:
                trade = self.close(symbol, current_price, timestamp, reason)
                if trade:
                    trades.append(trade)

        return trades

    def check_time_exits(
        self,
        timestamp: datetime,
        prices: dict[str, float],
        max_holding_bars: int,
    ) -> list[TradeRecord]:
        """Close positions held for max_holding_bars steps or more."""
        trades: list[TradeRecord] = []

        for symbol, position in list(self.positions.items()):
            current_price = prices.get(symbol)
            if current_price is None or position.bars_held < max_holding_bars:
                continue
            trade = self.close(symbol, current_price, timestamp, ExitReason.TIME_BASED)
            if trade:
                trades.append(trade)

        return trades

    def force_close_all(self, as_of: datetime) -> list[TradeRecord]:
        """
        Close every open position at the end of the period.

        Uses the last known price for each symbol, or the entry price if no
        bar was seen after entry.
        """
        trades: list[TradeRecord] = []
        for symbol in sorted(self.positions):
            position = self.positions[symbol]
            price = self.last_price(symbol) or position.entry_price
            trade = self.close(symbol, price, as_of, ExitReason.END_OF_PERIOD)
            if trade:
                trades.append(trade)
        return trades

    def check_invariants(self) -> None:
        """Raise AssertionError if the ledger is internally inconsistent."""
        for symbol, position in self.positions.items():
            if position.symbol != symbol:
                raise AssertionError(f"Position for {position.symbol} filed under {symbol}")
            if position.quantity <= 0:
                raise AssertionError(f"Non-positive quantity for {symbol}")
