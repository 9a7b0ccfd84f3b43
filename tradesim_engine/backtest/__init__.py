"""
Backtesting engine: bar grouping, position ledger, simulation loop and metrics.

Import BacktestEngine from tradesim_engine.backtest.engine.
"""

from tradesim_engine.backtest.errors import (
    CollaboratorError,
    ConfigurationError,
    NoHistoricalDataError,
    StrategyResolutionError,
    TradesimError,
)
from tradesim_engine.backtest.models import (
    BacktestRequest,
    BacktestResult,
    EquityPoint,
    ExitReason,
    FeeAccounting,
    FeeConfig,
    MetricsSummary,
    PositionSide,
    RunStatus,
    TradeRecord,
)

__all__ = [
    "BacktestRequest",
    "BacktestResult",
    "CollaboratorError",
    "ConfigurationError",
    "EquityPoint",
    "ExitReason",
    "FeeAccounting",
    "FeeConfig",
    "MetricsSummary",
    "NoHistoricalDataError",
    "PositionSide",
    "RunStatus",
    "StrategyResolutionError",
    "TradeRecord",
    "TradesimError",
]
