"""
Backtest Engine - deterministic, time-step driven simulation.

Main orchestration for a single backtest run:
- Groups multi-symbol bars into ordered time steps
- Invokes the strategy with the bars visible so far (no look-ahead)
- Applies signals, stops, targets and time exits to the position ledger
- Tracks equity, high-water mark and drawdown per step
- Force-closes open positions at the end of the period
- Computes the metrics summary

A run is strictly sequential. The engine object holds only immutable
collaborators, so one instance may serve many concurrent runs.
"""

import math
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from tradesim_engine.backtest.errors import (
    CollaboratorError,
    ConfigurationError,
    NoHistoricalDataError,
    StrategyResolutionError,
)
from tradesim_engine.backtest.fees import FeeCalculator, PercentageFeeCalculator, ZeroFeeCalculator
from tradesim_engine.backtest.frames import monthly_returns
from tradesim_engine.backtest.grouper import TimeStep, group_bars
from tradesim_engine.backtest.ledger import PositionLedger
from tradesim_engine.backtest.metrics import compute_metrics_summary
from tradesim_engine.backtest.models import (
    BacktestRequest,
    BacktestResult,
    ExitReason,
    FeeAccounting,
    PositionSide,
    RunStatus,
    SkippedSignal,
)
from tradesim_engine.backtest.run_state import RunState, generate_run_id
from tradesim_engine.config import Settings, get_settings
from tradesim_engine.domain.bar import Bar
from tradesim_engine.domain.signal import Signal
from tradesim_engine.interfaces.data_source import MarketDataSource
from tradesim_engine.logging import clear_run_id, get_logger, set_run_id
from tradesim_engine.strategies import StrategyFactory, StrategySignalSource

logger = get_logger(__name__)

ENGINE_VERSION = "1.0.0"

StrategyResolver = Callable[[str, dict[str, Any]], StrategySignalSource]


def _factory_resolver(name: str, params: dict[str, Any]) -> StrategySignalSource:
    return StrategyFactory.create(name, **params)


class BacktestEngine:
    """
    Deterministic time-step driven backtest engine.

    Collaborators:
    - data_source: loads bars when run() is not given them directly
    - fee_calculator: fee schedule; defaults to the request's percentage schedule
    - strategy_resolver: maps (name, params) to a strategy; defaults to StrategyFactory
    """

    def __init__(
        self,
        data_source: MarketDataSource | None = None,
        fee_calculator: FeeCalculator | None = None,
        strategy_resolver: StrategyResolver | None = None,
        settings: Settings | None = None,
    ):
        self._data_source = data_source
        self._fee_calculator = fee_calculator
        self._resolve_strategy = strategy_resolver or _factory_resolver
        self._settings = settings or get_settings()

    @property
    def settings(self) -> Settings:
        return self._settings

    # =========================================================================
    # Request handling
    # =========================================================================

    @staticmethod
    def validate_request(request: BacktestRequest) -> None:
        """
        Reject requests that cannot be simulated.

        Raises:
            ConfigurationError: If the date range is empty or reversed
        """
        if request.end <= request.start:
            raise ConfigurationError(
                f"end ({request.end.isoformat()}) must be after start ({request.start.isoformat()})"
            )
        if request.initial_cash is not None and request.initial_cash <= 0:
            raise ConfigurationError("initial_cash must be positive")

    def resolve_request(self, request: BacktestRequest) -> BacktestRequest:
        """Fill unset request fields from settings."""
        settings = self._settings
        updates: dict[str, Any] = {}
        if request.initial_cash is None:
            updates["initial_cash"] = settings.default_initial_cash
        if request.include_fees is None:
            updates["include_fees"] = settings.include_fees
        if request.fee_accounting is None:
            updates["fee_accounting"] = FeeAccounting(settings.fee_accounting)
        if request.risk_free_rate is None:
            updates["risk_free_rate"] = settings.risk_free_rate
        return request.model_copy(update=updates) if updates else request

    def _fee_calculator_for(self, request: BacktestRequest) -> FeeCalculator:
        if not request.include_fees:
            return ZeroFeeCalculator()
        return self._fee_calculator or PercentageFeeCalculator(request.fees)

    # =========================================================================
    # Run
    # =========================================================================

    def run(
        self,
        request: BacktestRequest,
        strategy: StrategySignalSource | None = None,
        bars: Iterable[Bar] | None = None,
        run_id: str | None = None,
    ) -> BacktestResult:
        """
        Run one backtest.

        Args:
            request: Backtest configuration
            strategy: Strategy instance; resolved from request.strategy when omitted
            bars: Bars to replay; loaded from the data source when omitted
            run_id: Explicit run id; generated when omitted

        Returns:
            BacktestResult with status COMPLETED, or FAILED if the strategy
            cannot be resolved or there is no data in range

        Raises:
            ConfigurationError: If the request is invalid
            CollaboratorError: If the strategy, fee calculator or data source fails
        """
        self.validate_request(request)
        request = self.resolve_request(request)
        run_id = run_id or generate_run_id()
        set_run_id(run_id)

        try:
            logger.info(
                "Starting backtest run_id=%s: strategy=%s, %d symbols, %s to %s",
                run_id,
                request.strategy if strategy is None else strategy.name,
                len(request.symbols),
                request.start.isoformat(),
                request.end.isoformat(),
            )

            try:
                if strategy is None:
                    strategy = self._resolve_strategy(request.strategy, dict(request.strategy_params))
            except StrategyResolutionError as e:
                return self._failed(run_id, request, str(e))

            ledger = PositionLedger(
                initial_cash=request.initial_cash or self._settings.default_initial_cash,
                strategy=strategy.name,
                fee_calculator=self._fee_calculator_for(request),
                fee_accounting=request.fee_accounting or FeeAccounting.NET,
                risk_free_rate=request.risk_free_rate or 0.0,
                max_position_pct=request.max_position_pct,
                run_id=run_id,
            )
            state = RunState(run_id=run_id, request=request, ledger=ledger)

            try:
                steps = group_bars(
                    self._load_bars(state, bars),
                    request.timeframe,
                    request.start,
                    request.end,
                )
            except NoHistoricalDataError as e:
                return self._failed(run_id, request, str(e), started_at=state.started_at)

            state.status = RunStatus.RUNNING
            last_index = len(steps) - 1
            for index, step in enumerate(steps):
                self._process_step(state, strategy, step, is_last=index == last_index)

            return self._finalize(state)
        finally:
            clear_run_id()

    def _load_bars(self, state: RunState, bars: Iterable[Bar] | None) -> list[Bar]:
        if bars is not None:
            return list(bars)
        if self._data_source is None:
            raise ConfigurationError("No bars supplied and no data source configured")

        request = state.request
        try:
            return self._data_source.get_bars(request.symbols, request.start, request.end, request.timeframe)
        except Exception as e:
            logger.error("Data source failed for run_id=%s: %s", state.run_id, e)
            raise CollaboratorError(
                f"Market data source failed: {e}",
                collaborator="market_data_source",
                run_id=state.run_id,
            ) from e

    def _process_step(
        self,
        state: RunState,
        strategy: StrategySignalSource,
        step: TimeStep,
        is_last: bool,
    ) -> None:
        """Advance the simulation by one time step."""
        ledger = state.ledger
        request = state.request
        wanted = set(request.symbols)
        step_bars = tuple(bar for bar in step.bars if bar.symbol in wanted)
        prices = {bar.symbol: bar.close for bar in step_bars}

        for bar in step_bars:
            state.history[bar.symbol].append(bar)
        ledger.mark_to_market(step_bars)
        ledger.increment_bars_held()

        # Protective exits are evaluated before the strategy sees the step
        ledger.check_exits(step.timestamp, prices)
        if request.max_holding_bars is not None:
            ledger.check_time_exits(step.timestamp, prices, request.max_holding_bars)

        for signal in self._call_strategy(state, strategy, step.timestamp):
            self._apply_signal(state, TimeStep(step.timestamp, step_bars), signal)

        if is_last:
            closed = ledger.force_close_all(step.timestamp)
            if closed:
                logger.info("Force-closed %d positions at end of period", len(closed))

        ledger.check_invariants()
        state.record_equity_point(step.timestamp)

    def _call_strategy(
        self,
        state: RunState,
        strategy: StrategySignalSource,
        timestamp: datetime,
    ) -> list[Signal]:
        positions = {symbol: pos.side for symbol, pos in state.ledger.positions.items()}
        try:
            return list(strategy.generate_signals(MappingProxyType(state.history), timestamp, positions))
        except Exception as e:
            logger.error("Strategy %s failed at %s: %s", strategy.name, timestamp.isoformat(), e)
            raise CollaboratorError(
                f"Strategy '{strategy.name}' failed at {timestamp.isoformat()}: {e}",
                collaborator="strategy",
                run_id=state.run_id,
            ) from e

    def _apply_signal(self, state: RunState, step: TimeStep, signal: Signal) -> None:
        """Route one signal to the ledger, or record why it was dropped."""
        bar = step.bar_for(signal.symbol)
        if bar is None:
            self._skip(state, step.timestamp, signal, "no bar for symbol at this step")
            return

        ledger = state.ledger
        position = ledger.get_position(signal.symbol)
        price = bar.close

        if signal.is_buy:
            if position is None:
                if ledger.open(signal.symbol, signal, price, step.timestamp, PositionSide.LONG) is None:
                    self._skip(state, step.timestamp, signal, "insufficient cash")
            elif position.side == PositionSide.SHORT:
                ledger.close(signal.symbol, price, step.timestamp, ExitReason.SIGNAL)
            else:
                self._skip(state, step.timestamp, signal, "position already open")
            return

        if position is None:
            if not state.request.allow_short:
                self._skip(state, step.timestamp, signal, "no open position")
            elif ledger.open(signal.symbol, signal, price, step.timestamp, PositionSide.SHORT) is None:
                self._skip(state, step.timestamp, signal, "insufficient cash")
        elif position.side == PositionSide.LONG:
            ledger.close(signal.symbol, price, step.timestamp, ExitReason.SIGNAL)
        else:
            self._skip(state, step.timestamp, signal, "position already open")

    @staticmethod
    def _skip(state: RunState, timestamp: datetime, signal: Signal, reason: str) -> None:
        logger.warning(
            "Skipped %s signal for %s at %s: %s",
            signal.action.value,
            signal.symbol,
            timestamp.isoformat(),
            reason,
        )
        state.skipped_signals.append(
            SkippedSignal(timestamp=timestamp, symbol=signal.symbol, action=signal.action, reason=reason)
        )

    # =========================================================================
    # Results
    # =========================================================================

    def _finalize(self, state: RunState) -> BacktestResult:
        ledger = state.ledger
        request = state.request
        initial = ledger.initial_cash
        final_capital = ledger.cash
        trades = list(ledger.closed_trades)

        expected = initial + sum(t.net_pnl for t in trades)
        if not math.isclose(final_capital, expected, rel_tol=1e-9, abs_tol=1e-6):
            message = f"Capital reconciliation drift: cash={final_capital:.6f}, expected={expected:.6f}"
            logger.error(message)
            state.warnings.append(message)

        metrics = compute_metrics_summary(
            trades=trades,
            equity_curve=state.equity_curve,
            initial_cash=initial,
            max_drawdown=state.max_drawdown,
            risk_free_rate=request.risk_free_rate or 0.0,
            periods_per_year=request.timeframe.periods_per_year(self._settings.annualization_days),
        )
        state.status = RunStatus.COMPLETED

        logger.info(
            "Backtest completed run_id=%s: %d trades, return=%.2f%%, Sharpe=%.2f, MaxDD=%.2f%%",
            state.run_id,
            len(trades),
            metrics.total_return * 100,
            metrics.sharpe_ratio,
            state.max_drawdown * 100,
        )

        return BacktestResult(
            run_id=state.run_id,
            status=state.status,
            ok=True,
            started_at=state.started_at,
            completed_at=datetime.now(UTC),
            request=request,
            initial_cash=initial,
            final_capital=final_capital,
            total_return=(final_capital - initial) / initial,
            max_drawdown=state.max_drawdown,
            trades=trades,
            equity_curve=state.equity_curve,
            metrics=metrics,
            monthly_returns=monthly_returns(state.equity_curve),
            skipped_signals=state.skipped_signals,
            warnings=state.warnings,
            engine_version=ENGINE_VERSION,
        )

    @staticmethod
    def _failed(
        run_id: str,
        request: BacktestRequest,
        error: str,
        started_at: datetime | None = None,
    ) -> BacktestResult:
        logger.error("Backtest failed run_id=%s: %s", run_id, error)
        initial = request.initial_cash or 0.0
        return BacktestResult(
            run_id=run_id,
            status=RunStatus.FAILED,
            ok=False,
            started_at=started_at or datetime.now(UTC),
            completed_at=datetime.now(UTC),
            request=request,
            initial_cash=initial,
            final_capital=initial,
            errors=[error],
            engine_version=ENGINE_VERSION,
        )
