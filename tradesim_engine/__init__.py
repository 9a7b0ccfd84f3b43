"""
Tradesim Backtesting Engine

A deterministic simulation engine supporting:
- Chronological multi-symbol replay of historical bars through a strategy
- Fee-aware position accounting with one open position per symbol
- Risk/performance metrics (Sharpe, Sortino, drawdown, VaR/CVaR)
- Walk-forward validation and Monte Carlo trade resampling
"""

__version__ = "1.0.0"
__author__ = "Tradesim Development Team"

from tradesim_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
