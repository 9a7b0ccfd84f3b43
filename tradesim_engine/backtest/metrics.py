"""
Performance metrics calculation for backtesting.

Computes returns, Sharpe, Sortino, Calmar, drawdown, VaR/CVaR, win rate,
profit factor and trade statistics.

Every function here is pure and total: zero trades, zero variance, a zero
high-water mark or an overflowing power all resolve to 0.0, never NaN or
infinity.
"""

import math
from collections.abc import Sequence

from tradesim_engine.backtest.models import (
    BacktestResult,
    EquityPoint,
    MetricsSummary,
    TradeRecord,
)
from tradesim_engine.logging import get_logger

logger = get_logger(__name__)

DEFAULT_RISK_FREE_RATE = 0.04
DAYS_PER_YEAR = 365


def _finite(value: float) -> float:
    return value if math.isfinite(value) else 0.0


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _population_std(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    mean = _mean(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance) if variance > 0 else 0.0


def calculate_returns(equity_curve: Sequence[EquityPoint]) -> list[float]:
    """Period-over-period returns, as recorded on the equity curve."""
    return [point.period_return for point in equity_curve]


def calculate_annualized_return(
    total_return: float,
    periods: int,
    periods_per_year: float = DAYS_PER_YEAR,
) -> float:
    """
    Compound total return to a yearly rate.

    annualized = (1 + total_return) ^ (periods_per_year / periods) - 1
    """
    if periods <= 0:
        return 0.0
    if total_return <= -1.0:
        return -1.0
    try:
        value = (1.0 + total_return) ** (periods_per_year / periods) - 1.0
    except OverflowError:
        return 0.0
    return _finite(value)


def calculate_volatility(
    returns: Sequence[float],
    periods_per_year: float = DAYS_PER_YEAR,
) -> float:
    """Annualized volatility: population std of period returns * sqrt(periods_per_year)."""
    return _finite(_population_std(returns) * math.sqrt(periods_per_year))


def calculate_sharpe_ratio(
    annualized_return: float,
    volatility: float,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
) -> float:
    """
    Calculate Sharpe ratio.

    Sharpe = (annualized_return - risk_free) / volatility, 0 if volatility is 0
    """
    if volatility <= 0:
        return 0.0
    return _finite((annualized_return - risk_free_rate) / volatility)


def calculate_downside_deviation(
    returns: Sequence[float],
    periods_per_year: float = DAYS_PER_YEAR,
) -> float:
    """sqrt(mean(r^2 over negative r) * periods_per_year); 0 with no negative returns."""
    negatives = [r for r in returns if r < 0]
    if not negatives:
        return 0.0
    return _finite(math.sqrt(_mean([r * r for r in negatives]) * periods_per_year))


def calculate_sortino_ratio(
    annualized_return: float,
    returns: Sequence[float],
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    periods_per_year: float = DAYS_PER_YEAR,
) -> float:
    """
    Calculate Sortino ratio (uses downside deviation).

    Sortino = (annualized_return - risk_free) / downside_dev, 0 with no negative returns
    """
    downside = calculate_downside_deviation(returns, periods_per_year)
    if downside <= 0:
        return 0.0
    return _finite((annualized_return - risk_free_rate) / downside)


def calculate_var(returns: Sequence[float], confidence: float = 0.95) -> float:
    """
    Historical Value-at-Risk.

    The return at index floor((1 - confidence) * n) of the ascending sort.
    """
    if not returns:
        return 0.0
    ordered = sorted(returns)
    index = min(math.floor((1.0 - confidence) * len(ordered)), len(ordered) - 1)
    return ordered[index]


def calculate_cvar(returns: Sequence[float], confidence: float = 0.95) -> float:
    """Conditional VaR: mean of all returns at or below VaR."""
    if not returns:
        return 0.0
    var = calculate_var(returns, confidence)
    return _mean([r for r in returns if r <= var])


def calculate_max_drawdown(equity_curve: Sequence[EquityPoint]) -> float:
    """Largest drawdown recorded on the curve, as a fraction of the peak."""
    return max((point.drawdown for point in equity_curve), default=0.0)


def calculate_ulcer_index(equity_curve: Sequence[EquityPoint]) -> float:
    """Root mean square of the drawdown series."""
    if len(equity_curve) < 2:
        return 0.0
    return _finite(math.sqrt(_mean([p.drawdown**2 for p in equity_curve])))


def calculate_calmar_ratio(annualized_return: float, max_drawdown: float) -> float:
    """
    Calculate Calmar ratio.

    Calmar = annualized return / max drawdown
    """
    if max_drawdown <= 0:
        return 0.0
    return _finite(annualized_return / max_drawdown)


def _max_streak(trades: Sequence[TradeRecord], winning: bool) -> int:
    best = current = 0
    for trade in trades:
        hit = trade.pnl > 0 if winning else trade.pnl < 0
        current = current + 1 if hit else 0
        best = max(best, current)
    return best


def calculate_trade_metrics(trades: Sequence[TradeRecord]) -> dict[str, float]:
    """Calculate trading metrics from trade records."""
    if not trades:
        return {
            "total_trades": 0,
            "winning_trades": 0,
            "losing_trades": 0,
            "win_rate": 0.0,
            "profit_factor": 0.0,
            "expectancy": 0.0,
            "avg_trade_pnl": 0.0,
            "avg_win": 0.0,
            "avg_loss": 0.0,
            "largest_win": 0.0,
            "largest_loss": 0.0,
            "avg_bars_held": 0.0,
            "avg_trade_duration_days": 0.0,
            "max_consecutive_wins": 0,
            "max_consecutive_losses": 0,
            "total_fees": 0.0,
            "diversification_ratio": 0.0,
        }

    wins = [t for t in trades if t.pnl > 0]
    losses = [t for t in trades if t.pnl < 0]

    total_trades = len(trades)
    win_rate = len(wins) / total_trades

    gross_profit = sum(t.pnl for t in wins)
    gross_loss = abs(sum(t.pnl for t in losses))

    profit_factor = gross_profit / gross_loss if gross_loss > 0 else 0.0

    avg_win = gross_profit / len(wins) if wins else 0.0
    avg_loss = gross_loss / len(losses) if losses else 0.0

    # Expectancy = (win_rate * avg_win) - (loss_rate * avg_loss)
    loss_rate = len(losses) / total_trades
    expectancy = (win_rate * avg_win) - (loss_rate * avg_loss)

    return {
        "total_trades": total_trades,
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "win_rate": win_rate,
        "profit_factor": _finite(profit_factor),
        "expectancy": expectancy,
        "avg_trade_pnl": sum(t.pnl for t in trades) / total_trades,
        "avg_win": avg_win,
        "avg_loss": avg_loss,
        "largest_win": max((t.pnl for t in wins), default=0.0),
        "largest_loss": min((t.pnl for t in losses), default=0.0),
        "avg_bars_held": sum(t.bars_held for t in trades) / total_trades,
        "avg_trade_duration_days": sum(t.duration_days for t in trades) / total_trades,
        "max_consecutive_wins": _max_streak(trades, winning=True),
        "max_consecutive_losses": _max_streak(trades, winning=False),
        "total_fees": sum(t.fees for t in trades),
        "diversification_ratio": len({t.symbol for t in trades}) / total_trades,
    }


def calculate_option_metrics(trades: Sequence[TradeRecord]) -> dict[str, float]:
    """Win rate and average entry Greeks over option trades."""
    options = [t for t in trades if t.entry_greeks is not None]
    if not options:
        return {
            "option_trades": 0,
            "option_win_rate": 0.0,
            "avg_delta": 0.0,
            "avg_gamma": 0.0,
            "avg_theta": 0.0,
            "avg_vega": 0.0,
        }

    greeks = [t.entry_greeks for t in options if t.entry_greeks is not None]
    return {
        "option_trades": len(options),
        "option_win_rate": sum(1 for t in options if t.pnl > 0) / len(options),
        "avg_delta": _mean([g.delta for g in greeks]),
        "avg_gamma": _mean([g.gamma for g in greeks]),
        "avg_theta": _mean([g.theta for g in greeks]),
        "avg_vega": _mean([g.vega for g in greeks]),
    }


def compute_metrics_summary(
    trades: Sequence[TradeRecord],
    equity_curve: Sequence[EquityPoint],
    initial_cash: float,
    max_drawdown: float | None = None,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    periods_per_year: float = DAYS_PER_YEAR,
) -> MetricsSummary:
    """
    Compute complete metrics summary.

    Args:
        trades: Closed trades in close order
        equity_curve: One point per simulated time step
        initial_cash: Starting capital
        max_drawdown: Maximum drawdown tracked by the simulation loop; taken
            from the curve when omitted (the curve stores the same values)
        risk_free_rate: Annual risk-free rate
        periods_per_year: Equity points per year (365 for daily bars)

    Returns:
        MetricsSummary with all computed metrics
    """
    returns = calculate_returns(equity_curve)

    final_equity = equity_curve[-1].equity if equity_curve else initial_cash
    total_return = (final_equity - initial_cash) / initial_cash if initial_cash > 0 else 0.0

    if max_drawdown is None:
        max_drawdown = calculate_max_drawdown(equity_curve)

    annualized = calculate_annualized_return(total_return, len(returns), periods_per_year)
    volatility = calculate_volatility(returns, periods_per_year)

    trade_metrics = calculate_trade_metrics(trades)
    option_metrics = calculate_option_metrics(trades)

    return MetricsSummary(
        total_return=total_return,
        annualized_return=annualized,
        volatility=volatility,
        sharpe_ratio=calculate_sharpe_ratio(annualized, volatility, risk_free_rate),
        sortino_ratio=calculate_sortino_ratio(annualized, returns, risk_free_rate, periods_per_year),
        calmar_ratio=calculate_calmar_ratio(annualized, max_drawdown),
        max_drawdown=max_drawdown,
        recovery_factor=_finite(total_return / max_drawdown) if max_drawdown > 0 else 0.0,
        ulcer_index=calculate_ulcer_index(equity_curve),
        var_95=calculate_var(returns, 0.95),
        cvar_95=calculate_cvar(returns, 0.95),
        var_99=calculate_var(returns, 0.99),
        cvar_99=calculate_cvar(returns, 0.99),
        **trade_metrics,
        **option_metrics,
    )


def recompute_metrics(
    result: BacktestResult,
    annualization_days: int = DAYS_PER_YEAR,
) -> MetricsSummary:
    """
    Re-derive metrics from a (possibly deserialized) result.

    Reproduces the run-time metrics exactly when annualization_days matches
    the value the run used.
    """
    request = result.request
    return compute_metrics_summary(
        trades=result.trades,
        equity_curve=result.equity_curve,
        initial_cash=result.initial_cash,
        max_drawdown=result.max_drawdown,
        risk_free_rate=(
            request.risk_free_rate if request.risk_free_rate is not None else DEFAULT_RISK_FREE_RATE
        ),
        periods_per_year=request.timeframe.periods_per_year(annualization_days),
    )
