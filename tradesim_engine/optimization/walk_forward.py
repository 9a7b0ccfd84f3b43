"""
Walk-Forward Analysis.

Splits a date range into consecutive (training, testing) windows and runs
an independent backtest on every period, so in-sample and out-of-sample
performance can be compared. No capital or positions carry across
periods. Sub-runs execute on a thread pool as independent futures.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta

from tradesim_engine.backtest.engine import BacktestEngine
from tradesim_engine.backtest.errors import CollaboratorError, ConfigurationError
from tradesim_engine.backtest.models import BacktestRequest, RunStatus
from tradesim_engine.backtest.run_state import generate_run_id
from tradesim_engine.logging import get_logger
from tradesim_engine.optimization.models import (
    PeriodType,
    WalkForwardConfig,
    WalkForwardResult,
    WalkForwardWindow,
    WindowResult,
    WindowType,
)
from tradesim_engine.strategies import StrategySignalSource

logger = get_logger(__name__)

# Periods are half-open: a bar stamped exactly at a boundary belongs to the later period
_BOUNDARY_EPSILON = timedelta(microseconds=1)


class WalkForwardAnalyzer:
    """
    Walk-forward analyzer over a single-run BacktestEngine.

    Each (window, period) pair becomes one independent engine run:
    1. Generate windows from the config
    2. Submit one training and one testing run per window
    3. Collect results in window order, training before testing
    4. Aggregate over successful runs only
    """

    def __init__(self, engine: BacktestEngine, max_workers: int | None = None):
        self._engine = engine
        self._max_workers = max_workers or engine.settings.walk_forward_max_workers

    @staticmethod
    def validate_config(config: WalkForwardConfig) -> None:
        """
        Raises:
            ConfigurationError: On a reversed range or non-positive lengths
        """
        if config.end_date <= config.start_date:
            raise ConfigurationError("end_date must be after start_date")
        for name in ("window_days", "step_days", "min_test_days"):
            if getattr(config, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(config, name)}")
        if config.test_days is not None and config.test_days < config.min_test_days:
            raise ConfigurationError("test_days must be >= min_test_days")
        if config.max_workers is not None and config.max_workers < 1:
            raise ConfigurationError("max_workers must be >= 1")

    @staticmethod
    def generate_windows(config: WalkForwardConfig) -> list[WalkForwardWindow]:
        """
        Generate walk-forward windows.

        ROLLING: the training window slides forward by step_days.
        ANCHORED: training always starts at start_date; its end grows by step_days.

        The testing period follows training immediately and is clipped to
        end_date; generation stops once it would be shorter than min_test_days.
        """
        WalkForwardAnalyzer.validate_config(config)

        _MAX_ITERATIONS = 10_000
        windows: list[WalkForwardWindow] = []
        train_days = timedelta(days=config.window_days)
        test_days = timedelta(days=config.effective_test_days)
        min_test = timedelta(days=config.min_test_days)
        current_start = config.start_date

        for window_id in range(_MAX_ITERATIONS):
            train_start = config.start_date if config.window_type == WindowType.ANCHORED else current_start
            train_end = current_start + train_days
            test_start = train_end
            test_end = min(test_start + test_days, config.end_date)

            if test_end - test_start < min_test:
                break

            windows.append(
                WalkForwardWindow(
                    window_id=window_id,
                    train_start=train_start,
                    train_end=train_end,
                    test_start=test_start,
                    test_end=test_end,
                )
            )
            current_start += timedelta(days=config.step_days)
        else:
            raise ConfigurationError(
                f"Walk-forward window generation exceeded {_MAX_ITERATIONS} iterations. "
                f"Check step_days ({config.step_days}) and date range."
            )

        return windows

    def run(
        self,
        config: WalkForwardConfig,
        request: BacktestRequest,
        strategy: StrategySignalSource | None = None,
        cancel_event: threading.Event | None = None,
    ) -> WalkForwardResult:
        """
        Run walk-forward analysis.

        Args:
            config: Window layout
            request: Template request; start/end are replaced per period
            strategy: Shared deterministic strategy; resolved per run from
                request.strategy when omitted
            cancel_event: When set, pending sub-runs are cancelled

        Returns:
            WalkForwardResult with per-period results and aggregates
        """
        windows = self.generate_windows(config)
        result = WalkForwardResult(
            run_id=generate_run_id("wf"),
            config=config,
            windows=windows,
            started_at=datetime.now(UTC),
        )

        if not windows:
            result.status = "failed"
            result.message = "No valid windows could be generated from date range"
            result.completed_at = datetime.now(UTC)
            logger.warning("Walk-forward %s: %s", result.run_id, result.message)
            return result

        logger.info(
            "Starting walk-forward %s: %d windows (%s), strategy=%s",
            result.run_id,
            len(windows),
            config.window_type.value,
            request.strategy if strategy is None else strategy.name,
        )

        collected: dict[tuple[int, PeriodType], WindowResult] = {}

        with ThreadPoolExecutor(max_workers=config.max_workers or self._max_workers) as pool:
            futures: dict[Future[WindowResult | None], tuple[int, PeriodType]] = {}
            for window in windows:
                for period in (PeriodType.TRAINING, PeriodType.TESTING):
                    future = pool.submit(self._run_period, window, period, request, strategy, cancel_event)
                    futures[future] = (window.window_id, period)

            for future in as_completed(futures):
                if cancel_event is not None and cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
                if future.cancelled():
                    continue
                window_result = future.result()
                if window_result is not None:
                    collected[futures[future]] = window_result

        cancelled = cancel_event is not None and cancel_event.is_set() and len(collected) < len(futures)
        period_order = {PeriodType.TRAINING: 0, PeriodType.TESTING: 1}
        result.results = [
            collected[key] for key in sorted(collected, key=lambda k: (k[0], period_order[k[1]]))
        ]
        self._aggregate(result)
        result.status = "cancelled" if cancelled else "completed"
        result.completed_at = datetime.now(UTC)

        logger.info(
            "Walk-forward %s %s: %d ok, %d failed, efficiency=%.2f",
            result.run_id,
            result.status,
            result.completed_runs,
            result.failed_runs,
            result.efficiency_ratio,
        )
        return result

    def _run_period(
        self,
        window: WalkForwardWindow,
        period: PeriodType,
        request: BacktestRequest,
        strategy: StrategySignalSource | None,
        cancel_event: threading.Event | None,
    ) -> WindowResult | None:
        """Run one period. Returns None if cancelled before starting."""
        if cancel_event is not None and cancel_event.is_set():
            return None

        start, end = window.bounds(period)
        sub_request = request.model_copy(update={"start": start, "end": end - _BOUNDARY_EPSILON})

        logger.debug(
            "Window %d %s: %s to %s",
            window.window_id,
            period.value,
            start.isoformat(),
            end.isoformat(),
        )

        try:
            backtest = self._engine.run(sub_request, strategy=strategy)
        except CollaboratorError as e:
            logger.warning("Window %d %s failed: %s", window.window_id, period.value, e)
            return WindowResult(
                window_id=window.window_id,
                period_type=period,
                start=start,
                end=end,
                ok=False,
                status=RunStatus.FAILED,
                run_id=e.run_id,
                error=str(e),
            )

        if not backtest.ok:
            logger.warning(
                "Window %d %s excluded: %s", window.window_id, period.value, "; ".join(backtest.errors)
            )
        return WindowResult.from_backtest(window, period, backtest)

    @staticmethod
    def _aggregate(result: WalkForwardResult) -> None:
        """Average successful runs per period type. Failed runs are counted, not averaged."""
        ok_results = [r for r in result.results if r.ok]
        result.completed_runs = len(ok_results)
        result.failed_runs = len(result.results) - len(ok_results)

        training = [r for r in ok_results if r.period_type == PeriodType.TRAINING]
        testing = [r for r in ok_results if r.period_type == PeriodType.TESTING]

        def _avg(values: list[float]) -> float:
            return sum(values) / len(values) if values else 0.0

        result.avg_training_return = _avg([r.total_return for r in training])
        result.avg_testing_return = _avg([r.total_return for r in testing])
        result.avg_training_sharpe = _avg([r.sharpe_ratio for r in training])
        result.avg_testing_sharpe = _avg([r.sharpe_ratio for r in testing])
        result.efficiency_ratio = (
            result.avg_testing_return / result.avg_training_return
            if result.avg_training_return != 0
            else 0.0
        )
