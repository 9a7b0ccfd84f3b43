"""
Technical indicators for the reference strategies.

Pure functions over close/high/low series. Each value at index i depends
only on inputs up to and including i, so no indicator looks ahead.
Warm-up positions are back-filled with the first defined value.
"""

from collections.abc import Sequence

import pandas as pd


def _finish(series: pd.Series, fill: float | None = None) -> list[float]:
    if fill is not None:
        series = series.fillna(fill)
    else:
        series = series.bfill().fillna(0.0)
    return [float(v) for v in series]


def sma(values: Sequence[float], period: int) -> list[float]:
    """Simple moving average."""
    if period < 1:
        raise ValueError("period must be >= 1")
    s = pd.Series(list(values), dtype="float64")
    return _finish(s.rolling(window=period, min_periods=period).mean())


def ema(values: Sequence[float], period: int) -> list[float]:
    """Exponential moving average seeded with the SMA of the first period values."""
    if period < 1:
        raise ValueError("period must be >= 1")
    s = pd.Series(list(values), dtype="float64")
    if len(s) < period:
        return _finish(pd.Series([float("nan")] * len(s)), fill=s.iloc[0] if len(s) else 0.0)
    seeded = s.copy()
    seeded.iloc[: period - 1] = float("nan")
    seeded.iloc[period - 1] = s.iloc[:period].mean()
    return _finish(seeded.ewm(span=period, adjust=False, ignore_na=True).mean())


def rsi(closes: Sequence[float], period: int = 14) -> list[float]:
    """Relative Strength Index (Wilder smoothing), 0-100. Neutral 50 during warm-up."""
    s = pd.Series(list(closes), dtype="float64")
    if len(s) <= period:
        return [50.0] * len(s)

    delta = s.diff()
    gains = delta.clip(lower=0.0)
    losses = -delta.clip(upper=0.0)
    avg_gain = gains.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = losses.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()

    rs = avg_gain / avg_loss
    values = 100.0 - 100.0 / (1.0 + rs)
    # No losses in the window: maximally overbought
    values = values.where(avg_loss != 0.0, 100.0)
    values.iloc[:period] = float("nan")
    return _finish(values, fill=50.0)


def rate_of_change(values: Sequence[float], period: int) -> list[float]:
    """Fractional change over period bars (0.05 = +5%). Zero during warm-up."""
    s = pd.Series(list(values), dtype="float64")
    return _finish(s.pct_change(periods=period, fill_method=None), fill=0.0)


def crossover(fast: Sequence[float], slow: Sequence[float], index: int) -> bool:
    """True if fast crosses above slow at index."""
    if not 1 <= index < min(len(fast), len(slow)):
        return False
    return fast[index - 1] <= slow[index - 1] and fast[index] > slow[index]


def crossunder(fast: Sequence[float], slow: Sequence[float], index: int) -> bool:
    """True if fast crosses below slow at index."""
    if not 1 <= index < min(len(fast), len(slow)):
        return False
    return fast[index - 1] >= slow[index - 1] and fast[index] < slow[index]


def highest(values: Sequence[float], period: int, index: int) -> float:
    """Maximum over the period bars ending at index (inclusive)."""
    return max(values[max(0, index - period + 1) : index + 1])


def lowest(values: Sequence[float], period: int, index: int) -> float:
    """Minimum over the period bars ending at index (inclusive)."""
    return min(values[max(0, index - period + 1) : index + 1])
