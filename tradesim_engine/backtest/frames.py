"""
pandas views of backtest inputs and outputs.

Converts bars from a DataFrame, and trades and equity points to DataFrames
for analysis, and buckets the equity curve into calendar months.
"""

from collections.abc import Sequence

import pandas as pd

from tradesim_engine.backtest.models import EquityPoint, MonthlyReturn, TradeRecord
from tradesim_engine.domain.bar import Bar, Timeframe

EQUITY_COLUMNS = [
    "timestamp",
    "equity",
    "cash",
    "cumulative_return",
    "period_return",
    "pnl",
    "drawdown",
    "high_water_mark",
    "open_positions",
]

TRADE_COLUMNS = [
    "trade_id",
    "symbol",
    "strategy",
    "side",
    "entry_time",
    "exit_time",
    "entry_price",
    "exit_price",
    "quantity",
    "fees",
    "gross_pnl",
    "pnl",
    "pnl_pct",
    "bars_held",
    "exit_reason",
]


def equity_curve_to_frame(equity_curve: Sequence[EquityPoint]) -> pd.DataFrame:
    """Equity curve as a DataFrame, one row per time step."""
    if not equity_curve:
        return pd.DataFrame(columns=EQUITY_COLUMNS)
    return pd.DataFrame([p.model_dump(include=set(EQUITY_COLUMNS)) for p in equity_curve])[
        EQUITY_COLUMNS
    ]


def trades_to_frame(trades: Sequence[TradeRecord]) -> pd.DataFrame:
    """Closed trades as a DataFrame, one row per trade."""
    if not trades:
        return pd.DataFrame(columns=TRADE_COLUMNS)
    return pd.DataFrame([
        {
            "trade_id": t.trade_id,
            "symbol": t.symbol,
            "strategy": t.strategy,
            "side": t.side.value,
            "entry_time": t.entry_time,
            "exit_time": t.exit_time,
            "entry_price": t.entry_price,
            "exit_price": t.exit_price,
            "quantity": t.quantity,
            "fees": t.fees,
            "gross_pnl": t.gross_pnl,
            "pnl": t.pnl,
            "pnl_pct": t.pnl_pct,
            "bars_held": t.bars_held,
            "exit_reason": t.exit_reason.value,
        }
        for t in trades
    ])


def monthly_returns(equity_curve: Sequence[EquityPoint]) -> list[MonthlyReturn]:
    """Cumulative return at the last equity point of each calendar month, in order."""
    if not equity_curve:
        return []

    df = equity_curve_to_frame(equity_curve)
    timestamps = pd.to_datetime(df["timestamp"], utc=True)
    last = df.groupby(timestamps.dt.strftime("%Y-%m"), sort=True)["cumulative_return"].last()
    return [MonthlyReturn(month=str(month), cumulative_return=float(value)) for month, value in last.items()]


def bars_from_frame(
    df: pd.DataFrame,
    timeframe: Timeframe = Timeframe.D1,
    symbol: str | None = None,
) -> list[Bar]:
    """
    Build bars from an OHLCV DataFrame.

    The timestamp comes from a 'timestamp' column or a DatetimeIndex; the
    symbol from a 'symbol' column or the symbol argument.

    Raises:
        ValueError: If required columns are missing
    """
    frame = df.reset_index() if "timestamp" not in df.columns else df
    if "timestamp" not in frame.columns and "index" in frame.columns:
        frame = frame.rename(columns={"index": "timestamp"})

    required = {"timestamp", "open", "high", "low", "close"}
    missing = required - set(frame.columns)
    if missing:
        raise ValueError(f"Missing columns: {sorted(missing)}")
    if "symbol" not in frame.columns and symbol is None:
        raise ValueError("DataFrame has no 'symbol' column and no symbol was given")

    timestamps = pd.to_datetime(frame["timestamp"], utc=True)
    bars = []
    for ts, row in zip(timestamps, frame.itertuples(index=False), strict=True):
        bars.append(
            Bar(
                symbol=getattr(row, "symbol", None) or symbol,
                timeframe=timeframe,
                timestamp=ts.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(getattr(row, "volume", 0.0) or 0.0),
            )
        )
    return bars
