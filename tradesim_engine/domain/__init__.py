"""
Domain models for the tradesim engine.

Immutable value types shared by the simulation loop, the ledger and
the strategy adapters.
"""

from tradesim_engine.domain.bar import Bar, InstrumentType, OptionType, Timeframe
from tradesim_engine.domain.signal import Signal, SignalAction

__all__ = [
    "Bar",
    "InstrumentType",
    "OptionType",
    "Signal",
    "SignalAction",
    "Timeframe",
]
