"""
Backtest data models.

Defines contracts for backtest requests, results, trades, and metrics.
Results serialize to JSON and back without loss, so a stored result can
be fed through the metrics engine again and reproduce the same numbers.
"""

import hashlib
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from tradesim_engine.domain.bar import Timeframe
from tradesim_engine.domain.signal import SignalAction


class PositionSide(str, Enum):
    """Position side."""

    LONG = "long"
    SHORT = "short"
    FLAT = "flat"


class ExitReason(str, Enum):
    """Why a position was closed. Every trade carries exactly one."""

    SIGNAL = "signal"
    STOP_LOSS = "stop_loss"
    TARGET = "target"
    TIME_BASED = "time_based"
    END_OF_PERIOD = "end_of_period"


class RunStatus(str, Enum):
    """Lifecycle of a single simulation run."""

    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FeeAccounting(str, Enum):
    """
    How fees enter trade P&L.

    NET: pnl = gross - fees. GROSS: pnl = gross, fees reported alongside.
    Cash is charged the fees either way.
    """

    NET = "net"
    GROSS = "gross"


# =============================================================================
# Request Models
# =============================================================================


class FeeConfig(BaseModel):
    """
    Transaction cost schedule, all rates in percent of traded value.

    Defaults follow a typical exchange-traded equity schedule: brokerage,
    a transaction tax charged on sells, stamp duty charged on buys,
    exchange charges, GST on brokerage plus exchange charges, and a
    regulator fee.
    """

    brokerage_pct: float = Field(default=0.03, ge=0.0)
    transaction_tax_pct: float = Field(default=0.025, ge=0.0, description="Charged on SELL only")
    stamp_duty_pct: float = Field(default=0.003, ge=0.0, description="Charged on BUY only")
    exchange_charges_pct: float = Field(default=0.00325, ge=0.0)
    gst_pct: float = Field(default=18.0, ge=0.0, description="Applied to brokerage + exchange charges")
    regulatory_fee_pct: float = Field(default=0.0001, ge=0.0)
    per_order_flat: float = Field(default=0.0, ge=0.0, description="Flat fee per order")


class BacktestRequest(BaseModel):
    """
    Request to run a backtest.

    Fields left as None are filled from Settings when the run starts; the
    resolved request is echoed on the result.
    """

    symbols: list[str] = Field(..., min_length=1, description="Symbols to backtest")
    strategy: str = Field(
        default="buy_and_hold",
        description="Registered strategy name",
        validation_alias=AliasChoices("strategy", "strategy_name"),
    )
    strategy_params: dict[str, Any] = Field(default_factory=dict)
    timeframe: Timeframe = Field(default=Timeframe.D1, description="Bar timeframe")
    start: datetime = Field(
        ...,
        description="Backtest start time (UTC)",
        validation_alias=AliasChoices("start", "start_date"),
    )
    end: datetime = Field(
        ...,
        description="Backtest end time (UTC)",
        validation_alias=AliasChoices("end", "end_date"),
    )
    initial_cash: float | None = Field(
        default=None,
        gt=0,
        description="Starting capital",
        validation_alias=AliasChoices("initial_cash", "initial_capital"),
    )
    include_fees: bool | None = None
    fee_accounting: FeeAccounting | None = None
    fees: FeeConfig = Field(default_factory=FeeConfig)
    allow_short: bool = Field(default=False, description="SELL with no position opens a short")
    max_holding_bars: int | None = Field(default=None, ge=1, description="Time-based exit")
    max_position_pct: float | None = Field(
        default=None, gt=0.0, le=1.0, description="Cap on cash committed per entry"
    )
    risk_free_rate: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("start", "end")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive datetimes are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


# =============================================================================
# Result Models
# =============================================================================


class Greeks(BaseModel):
    """Black-Scholes sensitivities of one option contract."""

    delta: float = 0.0
    gamma: float = 0.0
    theta: float = Field(default=0.0, description="Per calendar day")
    vega: float = Field(default=0.0, description="Per 1 point of volatility")
    rho: float = Field(default=0.0, description="Per 1 point of interest rate")
    implied_volatility: float = 0.0
    time_to_expiry: float = Field(default=0.0, description="Years")


class EquityPoint(BaseModel):
    """Single point on the equity curve."""

    timestamp: datetime
    equity: float
    cash: float
    cumulative_return: float = Field(description="(equity - initial) / initial")
    period_return: float = Field(description="Return since the previous point")
    pnl: float = Field(description="equity - initial")
    drawdown: float = Field(description="Drawdown from peak as decimal (0.1 = 10%)")
    high_water_mark: float
    open_positions: int = 0


class TradeRecord(BaseModel):
    """Record of a completed trade (entry + exit). Immutable once created."""

    trade_id: str
    symbol: str
    strategy: str
    side: PositionSide
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    quantity: float
    entry_fees: float = 0.0
    exit_fees: float = 0.0
    fees: float = Field(default=0.0, description="entry_fees + exit_fees")
    gross_pnl: float
    pnl: float = Field(description="Realized P&L under the run's fee accounting")
    pnl_pct: float = 0.0
    mae: float = Field(default=0.0, description="Maximum Adverse Excursion")
    mfe: float = Field(default=0.0, description="Maximum Favorable Excursion")
    bars_held: int = 0
    exit_reason: ExitReason
    stop_loss: float | None = None
    target: float | None = None
    entry_greeks: Greeks | None = None
    exit_greeks: Greeks | None = None

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_chronology(self) -> "TradeRecord":
        if self.exit_time < self.entry_time:
            raise ValueError("exit_time must not precede entry_time")
        return self

    @property
    def net_pnl(self) -> float:
        """P&L after fees, whatever the accounting convention."""
        return self.gross_pnl - self.fees

    @property
    def is_option(self) -> bool:
        return self.entry_greeks is not None

    @property
    def duration_days(self) -> float:
        return (self.exit_time - self.entry_time).total_seconds() / 86400.0


class SkippedSignal(BaseModel):
    """A signal that was dropped without touching the ledger."""

    timestamp: datetime
    symbol: str
    action: SignalAction
    reason: str


class MonthlyReturn(BaseModel):
    """Cumulative return at the last equity point of a calendar month."""

    month: str = Field(description="YYYY-MM")
    cumulative_return: float


class MetricsSummary(BaseModel):
    """Performance metrics summary."""

    # Returns
    total_return: float = 0.0
    annualized_return: float = 0.0

    # Risk
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0
    recovery_factor: float = 0.0
    ulcer_index: float = 0.0
    var_95: float = 0.0
    cvar_95: float = 0.0
    var_99: float = 0.0
    cvar_99: float = 0.0

    # Trading
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    avg_trade_pnl: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    avg_bars_held: float = 0.0
    avg_trade_duration_days: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    total_fees: float = 0.0
    diversification_ratio: float = 0.0

    # Options
    option_trades: int = 0
    option_win_rate: float = 0.0
    avg_delta: float = 0.0
    avg_gamma: float = 0.0
    avg_theta: float = 0.0
    avg_vega: float = 0.0


class BacktestResult(BaseModel):
    """Complete backtest result."""

    run_id: str
    status: RunStatus = RunStatus.INITIALIZED
    ok: bool = True
    started_at: datetime
    completed_at: datetime | None = None
    request: BacktestRequest
    initial_cash: float
    final_capital: float
    total_return: float = 0.0
    max_drawdown: float = 0.0
    trades: list[TradeRecord] = Field(default_factory=list)
    equity_curve: list[EquityPoint] = Field(default_factory=list)
    metrics: MetricsSummary | None = None
    monthly_returns: list[MonthlyReturn] = Field(default_factory=list)
    skipped_signals: list[SkippedSignal] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    engine_version: str = "1.0.0"

    def fingerprint(self) -> str:
        """
        Content hash of the result, ignoring run identity and wall-clock times.

        Two runs over identical inputs produce the same fingerprint.
        """
        payload = self.model_dump_json(exclude={"run_id", "started_at", "completed_at"})
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
