"""
Analyses composed from single backtest runs: walk-forward validation and
Monte Carlo trade resampling.
"""

from tradesim_engine.optimization.models import (
    MonteCarloConfig,
    MonteCarloSummary,
    PeriodType,
    WalkForwardConfig,
    WalkForwardResult,
    WalkForwardWindow,
    WindowResult,
    WindowType,
)
from tradesim_engine.optimization.monte_carlo import MonteCarloSimulator
from tradesim_engine.optimization.walk_forward import WalkForwardAnalyzer

__all__ = [
    "MonteCarloConfig",
    "MonteCarloSimulator",
    "MonteCarloSummary",
    "PeriodType",
    "WalkForwardAnalyzer",
    "WalkForwardConfig",
    "WalkForwardResult",
    "WalkForwardWindow",
    "WindowResult",
    "WindowType",
]
