"""
Interfaces (abstract base classes) for the tradesim engine.

These define the contracts implemented by market data sources.
"""

from tradesim_engine.interfaces.data_source import InMemoryDataSource, MarketDataSource

__all__ = ["InMemoryDataSource", "MarketDataSource"]
