"""
Tests for walk-forward window generation and execution.
"""

import threading
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import pytest

from synthetic_data import START, clean_trend
from tradesim_engine.backtest.engine import BacktestEngine
from tradesim_engine.backtest.errors import ConfigurationError
from tradesim_engine.backtest.models import BacktestRequest, PositionSide, RunStatus
from tradesim_engine.config import Settings
from tradesim_engine.domain.bar import Bar
from tradesim_engine.domain.signal import Signal
from tradesim_engine.interfaces.data_source import InMemoryDataSource
from tradesim_engine.optimization import (
    PeriodType,
    WalkForwardAnalyzer,
    WalkForwardConfig,
    WindowType,
)
from tradesim_engine.strategies import BuyAndHoldStrategy

YEAR_END = START + timedelta(days=365)


def make_config(**kwargs) -> WalkForwardConfig:
    params = {
        "start_date": START,
        "end_date": YEAR_END,
        "window_days": 180,
        "step_days": 30,
        "min_test_days": 30,
    }
    params.update(kwargs)
    return WalkForwardConfig(**params)


@pytest.fixture
def template() -> BacktestRequest:
    return BacktestRequest(
        symbols=["X"],
        strategy="buy_and_hold",
        start=START,
        end=YEAR_END,
        initial_cash=100000.0,
        include_fees=False,
    )


def analyzer_for(bars: list[Bar], settings: Settings, max_workers: int = 4) -> WalkForwardAnalyzer:
    engine = BacktestEngine(data_source=InMemoryDataSource(bars), settings=settings)
    return WalkForwardAnalyzer(engine, max_workers=max_workers)


class _FailsAfter(BuyAndHoldStrategy):
    """Raises once it is shown a bar at or after the cutoff."""

    def __init__(self, cutoff: datetime):
        super().__init__()
        self.cutoff = cutoff

    def evaluate(self, symbol: str, bars: Sequence[Bar], position: PositionSide) -> Signal | None:
        if bars[-1].timestamp >= self.cutoff:
            raise RuntimeError("model not calibrated for this regime")
        return super().evaluate(symbol, bars, position)


# =============================================================================
# Window Generation
# =============================================================================


class TestGenerateWindows:
    def test_rolling_window_count_and_bounds(self) -> None:
        windows = WalkForwardAnalyzer.generate_windows(make_config())

        assert len(windows) == 6
        first = windows[0]
        assert first.train_start == START
        assert first.train_end == START + timedelta(days=180)
        assert first.test_start == first.train_end
        assert first.test_end == START + timedelta(days=210)
        assert windows[1].train_start == START + timedelta(days=30)

    def test_windows_are_ordered_and_non_overlapping(self) -> None:
        for w in WalkForwardAnalyzer.generate_windows(make_config()):
            assert w.train_start < w.train_end == w.test_start < w.test_end <= YEAR_END

    def test_anchored_training_grows(self) -> None:
        windows = WalkForwardAnalyzer.generate_windows(make_config(window_type=WindowType.ANCHORED))

        assert all(w.train_start == START for w in windows)
        lengths = [w.train_end - w.train_start for w in windows]
        assert lengths == sorted(lengths)
        assert lengths[1] - lengths[0] == timedelta(days=30)

    def test_longer_test_period_clipped_to_end(self) -> None:
        windows = WalkForwardAnalyzer.generate_windows(make_config(test_days=60))

        assert len(windows) == 6
        assert windows[0].test_end - windows[0].test_start == timedelta(days=60)
        assert windows[-1].test_end == YEAR_END

    def test_range_too_short_for_any_window(self) -> None:
        config = make_config(end_date=START + timedelta(days=200))

        assert WalkForwardAnalyzer.generate_windows(config) == []

    def test_naive_dates_are_utc(self) -> None:
        config = make_config(start_date=datetime(2024, 1, 1), end_date=datetime(2024, 12, 31))

        assert config.start_date.tzinfo is not None
        assert config.start_date == datetime(2024, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"end_date": START - timedelta(days=1)},
            {"window_days": 0},
            {"step_days": 0},
            {"min_test_days": -5},
            {"test_days": 10},
            {"max_workers": 0},
        ],
    )
    def test_invalid_config_raises(self, overrides: dict) -> None:
        with pytest.raises(ConfigurationError):
            WalkForwardAnalyzer.generate_windows(make_config(**overrides))


# =============================================================================
# Execution
# =============================================================================


class TestWalkForwardRun:
    def test_runs_every_period(self, settings: Settings, template: BacktestRequest) -> None:
        analyzer = analyzer_for(clean_trend("X", 366), settings)

        result = analyzer.run(make_config(), template)

        assert result.status == "completed"
        assert len(result.windows) == 6
        assert len(result.results) == 12
        assert result.completed_runs == 12
        assert result.failed_runs == 0
        keys = [(r.window_id, r.period_type) for r in result.results]
        assert keys == [(i, p) for i in range(6) for p in (PeriodType.TRAINING, PeriodType.TESTING)]
        assert result.avg_training_return > 0
        assert result.efficiency_ratio == pytest.approx(result.avg_testing_return / result.avg_training_return)

    def test_periods_are_independent(self, settings: Settings, template: BacktestRequest) -> None:
        """Every sub-run starts from the template capital."""
        analyzer = analyzer_for(clean_trend("X", 366), settings)

        result = analyzer.run(make_config(), template)

        for r in result.results:
            assert r.final_capital == pytest.approx(100000.0 * (1 + r.total_return))
            assert r.metrics is not None
            assert r.total_trades == 1

    def test_missing_data_windows_excluded(self, settings: Settings, template: BacktestRequest) -> None:
        analyzer = analyzer_for(clean_trend("X", 250), settings)

        result = analyzer.run(make_config(), template)

        failed = [r for r in result.results if not r.ok]
        assert len(failed) == 3
        assert all(r.period_type == PeriodType.TESTING for r in failed)
        assert all(r.status == RunStatus.FAILED for r in failed)
        assert result.failed_runs == 3
        assert result.completed_runs == 9

        ok_testing = [r.total_return for r in result.results_for(PeriodType.TESTING) if r.ok]
        assert result.avg_testing_return == pytest.approx(sum(ok_testing) / len(ok_testing))

    def test_collaborator_failure_isolated_to_window(self, settings: Settings, template: BacktestRequest) -> None:
        analyzer = analyzer_for(clean_trend("X", 366), settings)

        result = analyzer.run(make_config(), template, strategy=_FailsAfter(START + timedelta(days=300)))

        failed = [(r.window_id, r.period_type) for r in result.results if not r.ok]
        assert sorted(failed) == [
            (4, PeriodType.TESTING),
            (5, PeriodType.TRAINING),
            (5, PeriodType.TESTING),
        ]
        assert all(r.error for r in result.results if not r.ok)
        assert result.completed_runs == 9

    def test_same_results_regardless_of_workers(self, settings: Settings, template: BacktestRequest) -> None:
        bars = clean_trend("X", 366)

        serial = analyzer_for(bars, settings, max_workers=1).run(make_config(), template)
        parallel = analyzer_for(bars, settings, max_workers=8).run(make_config(), template)

        def summary(res):
            return [(r.window_id, r.period_type, r.total_return, r.final_capital) for r in res.results]

        assert summary(serial) == summary(parallel)

    def test_no_windows_fails(self, settings: Settings, template: BacktestRequest) -> None:
        analyzer = analyzer_for(clean_trend("X", 366), settings)

        result = analyzer.run(make_config(end_date=START + timedelta(days=100)), template)

        assert result.status == "failed"
        assert result.results == []
        assert result.message

    def test_cancel_before_start(self, settings: Settings, template: BacktestRequest) -> None:
        analyzer = analyzer_for(clean_trend("X", 366), settings)
        cancel = threading.Event()
        cancel.set()

        result = analyzer.run(make_config(), template, cancel_event=cancel)

        assert result.status == "cancelled"
        assert result.results == []
