"""
Data models for walk-forward validation and Monte Carlo resampling.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from tradesim_engine.backtest.models import BacktestResult, MetricsSummary, RunStatus


class WindowType(str, Enum):
    """Walk-forward window type."""

    ROLLING = "rolling"  # Fixed-size rolling training window
    ANCHORED = "anchored"  # Training window grows from the anchor date


class PeriodType(str, Enum):
    """Role of a sub-run inside a walk-forward window."""

    TRAINING = "training"
    TESTING = "testing"


# =============================================================================
# Walk-Forward Models
# =============================================================================


class WalkForwardConfig(BaseModel):
    """
    Configuration for walk-forward analysis.

    Lengths are in days. Validation happens in the analyzer so that invalid
    values surface as ConfigurationError.
    """

    start_date: datetime = Field(..., description="Overall start date")
    end_date: datetime = Field(..., description="Overall end date")
    window_days: int = Field(default=180, description="Training period length")
    step_days: int = Field(default=30, description="Days to step forward each iteration")
    min_test_days: int = Field(default=30, description="Shortest acceptable testing period")
    test_days: int | None = Field(
        default=None, description="Testing period length; defaults to min_test_days"
    )
    window_type: WindowType = Field(default=WindowType.ROLLING)
    max_workers: int | None = Field(default=None, description="Thread pool size override")

    @field_validator("start_date", "end_date")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive datetimes are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @property
    def effective_test_days(self) -> int:
        return self.test_days if self.test_days is not None else self.min_test_days


@dataclass(frozen=True)
class WalkForwardWindow:
    """Bounds of one (training, testing) pair. Periods are half-open [start, end)."""

    window_id: int
    train_start: datetime
    train_end: datetime
    test_start: datetime
    test_end: datetime

    def bounds(self, period: PeriodType) -> tuple[datetime, datetime]:
        if period == PeriodType.TRAINING:
            return self.train_start, self.train_end
        return self.test_start, self.test_end


class WindowResult(BaseModel):
    """Outcome of one sub-run of a walk-forward window."""

    window_id: int
    period_type: PeriodType
    start: datetime
    end: datetime
    ok: bool
    status: RunStatus
    run_id: str | None = None
    final_capital: float = 0.0
    total_return: float = 0.0
    sharpe_ratio: float = 0.0
    total_trades: int = 0
    metrics: MetricsSummary | None = None
    error: str | None = None

    @classmethod
    def from_backtest(
        cls,
        window: WalkForwardWindow,
        period: PeriodType,
        result: BacktestResult,
    ) -> "WindowResult":
        start, end = window.bounds(period)
        metrics = result.metrics
        return cls(
            window_id=window.window_id,
            period_type=period,
            start=start,
            end=end,
            ok=result.ok,
            status=result.status,
            run_id=result.run_id,
            final_capital=result.final_capital,
            total_return=result.total_return,
            sharpe_ratio=metrics.sharpe_ratio if metrics else 0.0,
            total_trades=metrics.total_trades if metrics else 0,
            metrics=metrics,
            error="; ".join(result.errors) or None,
        )


class WalkForwardResult(BaseModel):
    """Complete walk-forward analysis result."""

    run_id: str
    config: WalkForwardConfig

    status: str = "pending"  # pending, completed, cancelled, failed
    message: str = ""

    windows: list[WalkForwardWindow] = Field(default_factory=list)
    results: list[WindowResult] = Field(default_factory=list)

    # Aggregates over successful sub-runs only
    completed_runs: int = 0
    failed_runs: int = 0
    avg_training_return: float = 0.0
    avg_testing_return: float = 0.0
    avg_training_sharpe: float = 0.0
    avg_testing_sharpe: float = 0.0
    efficiency_ratio: float = 0.0

    started_at: datetime | None = None
    completed_at: datetime | None = None

    def results_for(self, period: PeriodType) -> list[WindowResult]:
        return [r for r in self.results if r.period_type == period]


# =============================================================================
# Monte Carlo Models
# =============================================================================


class MonteCarloConfig(BaseModel):
    """Configuration for bootstrap resampling of trade P&L."""

    simulations: int = Field(default=1000, description="Number of resampled paths")
    confidence_level: float = Field(default=0.95, description="Interval confidence, in (0, 1)")
    drawdown_threshold: float = Field(default=0.10, description="Drawdown fraction to count")
    seed: int | None = None
    max_workers: int = Field(default=1, description="Threads for resampling chunks")
    chunk_size: int = Field(default=250, description="Simulations per seeded chunk")


class MonteCarloSummary(BaseModel):
    """Empirical distribution of resampled outcomes."""

    simulations: int
    trade_count: int
    confidence_level: float
    drawdown_threshold: float
    realized_return: float = Field(description="Total return of the original trade sequence")
    expected_return: float
    expected_volatility: float
    worst_case: float
    best_case: float
    confidence_lower: float
    confidence_upper: float
    probability_of_loss: float
    probability_of_drawdown: float
    return_distribution: list[float] = Field(default_factory=list)
