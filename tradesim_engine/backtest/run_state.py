"""
Per-run mutable state for the simulation loop.

The engine itself holds only immutable collaborators; everything a run
mutates lives here, so independent runs can execute concurrently.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from tradesim_engine.backtest.ledger import PositionLedger
from tradesim_engine.backtest.models import (
    BacktestRequest,
    EquityPoint,
    RunStatus,
    SkippedSignal,
)
from tradesim_engine.domain.bar import Bar


def generate_run_id(prefix: str = "bt") -> str:
    """
    Generate a unique run ID.

    Format: {prefix}_{timestamp}_{uuid8}
    Example: bt_20240115_143022_a1b2c3d4
    """
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{timestamp}_{uuid4().hex[:8]}"


@dataclass
class RunState:
    """Everything one simulation run reads and writes."""

    run_id: str
    request: BacktestRequest
    ledger: PositionLedger
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: RunStatus = RunStatus.INITIALIZED
    history: dict[str, list[Bar]] = field(default_factory=lambda: defaultdict(list))
    equity_curve: list[EquityPoint] = field(default_factory=list)
    skipped_signals: list[SkippedSignal] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    high_water_mark: float = field(init=False)
    max_drawdown: float = 0.0
    previous_equity: float = field(init=False)

    def __post_init__(self) -> None:
        self.high_water_mark = self.ledger.initial_cash
        self.previous_equity = self.ledger.initial_cash

    @property
    def initial_cash(self) -> float:
        return self.ledger.initial_cash

    def record_equity_point(self, timestamp: datetime) -> EquityPoint:
        """Append the equity point for this step and update the drawdown tracker."""
        equity = self.ledger.equity
        initial = self.initial_cash

        self.high_water_mark = max(self.high_water_mark, equity)
        drawdown = (
            (self.high_water_mark - equity) / self.high_water_mark if self.high_water_mark > 0 else 0.0
        )
        self.max_drawdown = max(self.max_drawdown, drawdown)

        point = EquityPoint(
            timestamp=timestamp,
            equity=equity,
            cash=self.ledger.cash,
            cumulative_return=(equity - initial) / initial,
            period_return=(
                (equity - self.previous_equity) / self.previous_equity if self.previous_equity > 0 else 0.0
            ),
            pnl=equity - initial,
            drawdown=drawdown,
            high_water_mark=self.high_water_mark,
            open_positions=len(self.ledger.positions),
        )
        self.equity_curve.append(point)
        self.previous_equity = equity
        return point
