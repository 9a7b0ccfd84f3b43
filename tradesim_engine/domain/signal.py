"""
Trade signal emitted by a strategy for one time step.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SignalAction(str, Enum):
    """Signal direction."""

    BUY = "BUY"
    SELL = "SELL"


class Signal(BaseModel):
    """
    A request to trade one symbol at the current step.

    The quantity is a suggestion: the ledger caps it by available cash.
    Signals are consumed once by the simulation loop and then discarded.
    """

    symbol: str = Field(..., min_length=1)
    action: SignalAction
    quantity: float = Field(..., gt=0, description="Suggested quantity")
    price: float | None = Field(default=None, gt=0, description="Reference price")
    stop_loss: float | None = Field(default=None, gt=0)
    target: float | None = Field(default=None, gt=0)
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @property
    def is_buy(self) -> bool:
        return self.action == SignalAction.BUY

    @property
    def is_sell(self) -> bool:
        return self.action == SignalAction.SELL
