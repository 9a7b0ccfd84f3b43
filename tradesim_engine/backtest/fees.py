"""
Transaction cost calculation.

The engine only depends on the FeeCalculator protocol: a synchronous,
side-effect free quote of total fees for a (price, quantity, action).
"""

from dataclasses import dataclass, field
from typing import Protocol

from tradesim_engine.backtest.models import FeeConfig
from tradesim_engine.domain.signal import SignalAction


@dataclass(frozen=True)
class FeeQuote:
    """Total fees for one order, with the per-component breakdown."""

    total_fees: float
    breakdown: dict[str, float] = field(default_factory=dict)


class FeeCalculator(Protocol):
    """Contract for fee schedules used by the ledger."""

    def quote(self, price: float, quantity: float, action: SignalAction) -> FeeQuote: ...


class ZeroFeeCalculator:
    """Fee-free execution."""

    def quote(self, price: float, quantity: float, action: SignalAction) -> FeeQuote:
        return FeeQuote(total_fees=0.0)


@dataclass(frozen=True)
class PercentageFeeCalculator:
    """
    Percentage-of-value fee schedule.

    Components (value = price * quantity):
    - brokerage: value * brokerage_pct
    - transaction tax: value * transaction_tax_pct, SELL only
    - stamp duty: value * stamp_duty_pct, BUY only
    - exchange charges: value * exchange_charges_pct
    - GST: (brokerage + exchange charges) * gst_pct
    - regulatory fee: value * regulatory_fee_pct
    - flat per-order fee
    """

    config: FeeConfig = field(default_factory=FeeConfig)

    def quote(self, price: float, quantity: float, action: SignalAction) -> FeeQuote:
        cfg = self.config
        value = price * quantity

        brokerage = value * cfg.brokerage_pct / 100.0
        transaction_tax = value * cfg.transaction_tax_pct / 100.0 if action == SignalAction.SELL else 0.0
        stamp_duty = value * cfg.stamp_duty_pct / 100.0 if action == SignalAction.BUY else 0.0
        exchange_charges = value * cfg.exchange_charges_pct / 100.0
        gst = (brokerage + exchange_charges) * cfg.gst_pct / 100.0
        regulatory_fee = value * cfg.regulatory_fee_pct / 100.0

        breakdown = {
            "brokerage": brokerage,
            "transaction_tax": transaction_tax,
            "stamp_duty": stamp_duty,
            "exchange_charges": exchange_charges,
            "gst": gst,
            "regulatory_fee": regulatory_fee,
            "flat": cfg.per_order_flat,
        }
        return FeeQuote(total_fees=sum(breakdown.values()), breakdown=breakdown)
