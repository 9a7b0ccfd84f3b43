"""
Strategy adapters for the simulation loop.

Strategies are resolved by registry name through StrategyFactory.
"""

from typing import Any

from tradesim_engine.backtest.errors import StrategyResolutionError
from tradesim_engine.strategies.base import StrategyKind, StrategySignalSource
from tradesim_engine.strategies.library import (
    BuyAndHoldStrategy,
    ChannelBreakoutStrategy,
    MomentumStrategy,
    MovingAverageCrossStrategy,
    RsiReversionStrategy,
)

STRATEGY_REGISTRY: dict[str, type[StrategySignalSource]] = {
    "moving_average_cross": MovingAverageCrossStrategy,
    "momentum": MomentumStrategy,
    "rsi_reversion": RsiReversionStrategy,
    "channel_breakout": ChannelBreakoutStrategy,
    "buy_and_hold": BuyAndHoldStrategy,
}


class StrategyFactory:
    """Factory for creating strategy instances by name."""

    @staticmethod
    def create(name: str, **params: Any) -> StrategySignalSource:
        """
        Create a strategy instance by name.

        Args:
            name: Registry name (e.g., "moving_average_cross")
            **params: Constructor parameters

        Returns:
            Strategy instance

        Raises:
            StrategyResolutionError: If the name is unknown or the parameters are rejected
        """
        if name not in STRATEGY_REGISTRY:
            available = ", ".join(STRATEGY_REGISTRY)
            raise StrategyResolutionError(
                f"Unknown strategy '{name}'. Available: {available}", strategy=name
            )

        try:
            return STRATEGY_REGISTRY[name](**params)
        except (TypeError, ValueError) as e:
            raise StrategyResolutionError(
                f"Invalid parameters for strategy '{name}': {e}", strategy=name
            ) from e

    @staticmethod
    def list_strategies() -> list[str]:
        """Get list of registered strategy names."""
        return list(STRATEGY_REGISTRY)


__all__ = [
    "STRATEGY_REGISTRY",
    "BuyAndHoldStrategy",
    "ChannelBreakoutStrategy",
    "MomentumStrategy",
    "MovingAverageCrossStrategy",
    "RsiReversionStrategy",
    "StrategyFactory",
    "StrategyKind",
    "StrategySignalSource",
]
