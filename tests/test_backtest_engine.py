"""
Tests for the backtest engine simulation loop.

Uses small deterministic bar series and scripted strategies so every
trade, fee and equity point can be checked by hand.
"""

from datetime import datetime, timedelta, timezone

import pytest

from synthetic_data import (
    START,
    FailingStrategy,
    LookAheadProbe,
    ScriptedStrategy,
    chop_range,
    clean_trend,
    daily_bars,
)
from tradesim_engine.backtest.engine import BacktestEngine
from tradesim_engine.backtest.errors import CollaboratorError, ConfigurationError
from tradesim_engine.backtest.fees import FeeQuote
from tradesim_engine.backtest.metrics import recompute_metrics
from tradesim_engine.backtest.models import (
    BacktestRequest,
    BacktestResult,
    ExitReason,
    FeeAccounting,
    PositionSide,
    RunStatus,
)
from tradesim_engine.config import Settings
from tradesim_engine.domain.bar import Bar, Timeframe
from tradesim_engine.domain.signal import SignalAction
from tradesim_engine.interfaces.data_source import InMemoryDataSource, MarketDataSource

BUY = SignalAction.BUY
SELL = SignalAction.SELL


def make_request(symbols: list[str] | None = None, days: int = 30, **kwargs) -> BacktestRequest:
    params = {
        "symbols": symbols or ["X"],
        "start": START,
        "end": START + timedelta(days=days),
        "initial_cash": 100000.0,
        "include_fees": False,
    }
    params.update(kwargs)
    return BacktestRequest(**params)


# =============================================================================
# Basic Round Trips
# =============================================================================


class TestRoundTrip:
    """Single-symbol entry and exit scenarios."""

    def test_buy_then_sell_realizes_price_move(self, engine: BacktestEngine) -> None:
        """BUY 10 at 100, SELL at 110, no fees: one trade with pnl 100."""
        strategy = ScriptedStrategy({1: [("X", BUY)], 2: [("X", SELL)]}, quantity=10)

        result = engine.run(make_request(), strategy=strategy, bars=daily_bars("X", [100.0, 110.0]))

        assert result.ok is True
        assert result.status == RunStatus.COMPLETED
        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.pnl == pytest.approx(100.0)
        assert trade.quantity == 10
        assert trade.exit_reason == ExitReason.SIGNAL
        assert trade.side == PositionSide.LONG
        assert result.final_capital == pytest.approx(100100.0)

    def test_open_position_force_closed_at_end(self, engine: BacktestEngine) -> None:
        """A position still open on the final bar is closed at its close price."""
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10)
        bars = daily_bars("X", [100.0, 110.0])

        result = engine.run(make_request(), strategy=strategy, bars=bars)

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_price == 110.0
        assert trade.exit_reason == ExitReason.END_OF_PERIOD
        assert trade.exit_time == bars[-1].timestamp
        assert trade.pnl == pytest.approx(100.0)
        assert result.final_capital == pytest.approx(100100.0)

    def test_short_round_trip(self, engine: BacktestEngine) -> None:
        """SELL from flat opens a short when allowed; BUY covers it."""
        strategy = ScriptedStrategy({1: [("X", SELL)], 2: [("X", BUY)]}, quantity=10)

        result = engine.run(
            make_request(allow_short=True),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 90.0]),
        )

        trade = result.trades[0]
        assert trade.side == PositionSide.SHORT
        assert trade.pnl == pytest.approx(100.0)
        assert result.final_capital == pytest.approx(100100.0)

    def test_trade_ids_are_deterministic(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY), ("Y", BUY)]}, quantity=1)
        bars = daily_bars("X", [100.0, 101.0]) + daily_bars("Y", [50.0, 51.0])

        result = engine.run(make_request(["X", "Y"]), strategy=strategy, bars=bars)

        assert [t.trade_id for t in result.trades] == ["X-00001", "Y-00002"]


# =============================================================================
# Exits
# =============================================================================


class TestExits:
    """Stop-loss, target and time-based exits."""

    def test_stop_loss_triggers_on_close(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10, stop_loss=95.0)

        result = engine.run(make_request(), strategy=strategy, bars=daily_bars("X", [100.0, 94.0, 90.0]))

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.STOP_LOSS
        assert trade.exit_price == 94.0
        assert trade.stop_loss == 95.0

    def test_target_triggers_on_close(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10, target=105.0)

        result = engine.run(make_request(), strategy=strategy, bars=daily_bars("X", [100.0, 106.0, 107.0]))

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.TARGET
        assert trade.exit_price == 106.0

    def test_time_based_exit(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10)

        result = engine.run(
            make_request(max_holding_bars=2),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 101.0, 102.0, 103.0, 104.0]),
        )

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.TIME_BASED
        assert trade.exit_price == 102.0
        assert trade.bars_held == 2

    def test_every_trade_has_exit_reason(self, engine: BacktestEngine) -> None:
        result = engine.run(
            make_request(
                days=120,
                strategy="moving_average_cross",
                strategy_params={"fast_period": 2, "slow_period": 4},
            ),
            bars=chop_range("X", 60),
        )

        assert result.ok
        assert result.trades
        assert all(t.exit_reason in ExitReason for t in result.trades)


# =============================================================================
# Signal Resolution
# =============================================================================


class TestSignalResolution:
    """Signals that cannot be applied are skipped, logged and counted."""

    def test_one_open_position_per_symbol(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)], 2: [("X", BUY)]}, quantity=10)

        result = engine.run(make_request(), strategy=strategy, bars=daily_bars("X", [100.0, 101.0, 102.0]))

        assert len(result.trades) == 1
        assert len(result.skipped_signals) == 1
        assert result.skipped_signals[0].reason == "position already open"

    def test_sell_without_position_is_skipped(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", SELL)]}, quantity=10)

        result = engine.run(make_request(), strategy=strategy, bars=daily_bars("X", [100.0, 101.0]))

        assert result.trades == []
        assert result.skipped_signals[0].reason == "no open position"

    def test_signal_for_symbol_without_bar_is_skipped(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("Y", BUY)]}, quantity=10)

        result = engine.run(
            make_request(["X", "Y"]),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 101.0]) + daily_bars("Y", [50.0], START + timedelta(days=1)),
        )

        assert result.trades == []
        assert result.skipped_signals[0].reason == "no bar for symbol at this step"

    def test_insufficient_cash_is_skipped(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10)

        result = engine.run(
            make_request(initial_cash=50.0),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 101.0]),
        )

        assert result.trades == []
        assert result.skipped_signals[0].reason == "insufficient cash"
        assert result.final_capital == pytest.approx(50.0)

    def test_quantity_capped_by_cash(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=500)

        result = engine.run(
            make_request(initial_cash=1000.0),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 101.0]),
        )

        assert result.trades[0].quantity == 10

    def test_quantity_capped_by_cash_including_fees(self, engine: BacktestEngine) -> None:
        """Ten units cost exactly the cash; fees push the fill down to nine."""
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10)

        result = engine.run(
            make_request(initial_cash=1000.0, include_fees=True),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 101.0]),
        )

        assert result.trades[0].quantity == 9

    def test_max_position_pct_caps_entry(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=1000)

        result = engine.run(
            make_request(initial_cash=10000.0, max_position_pct=0.1),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 101.0]),
        )

        assert result.trades[0].quantity == 10


# =============================================================================
# Capital and Equity
# =============================================================================


class TestCapitalReconciliation:
    """Final capital always equals initial capital plus realized net P&L."""

    @pytest.mark.parametrize("accounting", [FeeAccounting.NET, FeeAccounting.GROSS])
    def test_reconciles_with_fees(self, engine: BacktestEngine, accounting: FeeAccounting) -> None:
        strategy = ScriptedStrategy(
            {1: [("X", BUY)], 3: [("X", SELL)], 4: [("X", BUY)], 6: [("X", SELL)]},
            quantity=25,
        )

        result = engine.run(
            make_request(include_fees=True, fee_accounting=accounting),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 103.0, 98.0, 97.0, 99.0, 104.0, 105.0]),
        )

        assert len(result.trades) == 2
        assert all(t.fees > 0 for t in result.trades)
        expected = result.initial_cash + sum(t.net_pnl for t in result.trades)
        assert result.final_capital == pytest.approx(expected, abs=1e-6)
        assert result.warnings == []

    def test_net_and_gross_pnl_conventions(self, engine: BacktestEngine) -> None:
        script = {1: [("X", BUY)], 2: [("X", SELL)]}
        bars = daily_bars("X", [100.0, 110.0])

        net = engine.run(make_request(include_fees=True), strategy=ScriptedStrategy(script), bars=bars)
        gross = engine.run(
            make_request(include_fees=True, fee_accounting=FeeAccounting.GROSS),
            strategy=ScriptedStrategy(script),
            bars=bars,
        )

        assert net.trades[0].pnl == pytest.approx(net.trades[0].gross_pnl - net.trades[0].fees)
        assert gross.trades[0].pnl == pytest.approx(gross.trades[0].gross_pnl)
        assert net.final_capital == pytest.approx(gross.final_capital)

    def test_short_reconciles_with_fees(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", SELL)], 3: [("X", BUY)]}, quantity=10)

        result = engine.run(
            make_request(include_fees=True, allow_short=True),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 95.0, 92.0, 93.0]),
        )

        trade = result.trades[0]
        assert trade.side == PositionSide.SHORT
        assert result.final_capital == pytest.approx(result.initial_cash + trade.net_pnl)

    def test_equity_curve_has_one_point_per_step(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10)

        result = engine.run(make_request(), strategy=strategy, bars=daily_bars("X", [100.0, 105.0, 102.0]))

        assert len(result.equity_curve) == 3
        assert [p.equity for p in result.equity_curve] == pytest.approx([100000.0, 100050.0, 100020.0])
        assert result.equity_curve[-1].equity == pytest.approx(result.final_capital)
        assert result.equity_curve[-1].open_positions == 0

    def test_drawdown_tracking(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)]}, quantity=10)

        result = engine.run(
            make_request(initial_cash=1000.0),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 120.0, 90.0, 110.0]),
        )

        assert result.max_drawdown == pytest.approx(0.25)
        assert result.metrics is not None
        assert result.metrics.max_drawdown == pytest.approx(0.25)
        assert all(p.drawdown >= 0 for p in result.equity_curve)
        assert result.equity_curve[1].high_water_mark == pytest.approx(1200.0)


# =============================================================================
# Determinism and Serialization
# =============================================================================


class TestDeterminism:
    """Same inputs, same outputs."""

    def test_identical_runs_have_identical_fingerprints(self, engine: BacktestEngine) -> None:
        request = make_request(
            days=120,
            include_fees=True,
            strategy="momentum",
            strategy_params={"lookback": 5, "threshold": 0.01},
        )
        bars = clean_trend("X", 40) + daily_bars("X", [140.0 - 2 * i for i in range(30)], START + timedelta(days=40))

        first = engine.run(request, bars=bars)
        second = engine.run(request, bars=bars)

        assert first.run_id != second.run_id
        assert first.fingerprint() == second.fingerprint()
        assert [t.trade_id for t in first.trades] == [t.trade_id for t in second.trades]

    def test_result_round_trips_through_json(self, engine: BacktestEngine) -> None:
        request = make_request(days=120, include_fees=True, strategy="buy_and_hold")
        result = engine.run(request, bars=clean_trend("X", 45) + clean_trend("Y", 45))

        restored = BacktestResult.model_validate_json(result.model_dump_json())

        assert restored == result
        assert restored.fingerprint() == result.fingerprint()

    def test_recomputed_metrics_match(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("X", BUY)], 5: [("X", SELL)], 7: [("X", BUY)]}, quantity=20)
        result = engine.run(
            make_request(include_fees=True),
            strategy=strategy,
            bars=daily_bars("X", [100.0, 102.0, 99.0, 101.0, 104.0, 103.0, 100.0, 98.0, 102.0]),
        )

        restored = BacktestResult.model_validate_json(result.model_dump_json())

        assert recompute_metrics(restored) == result.metrics


# =============================================================================
# Look-ahead and Grouping
# =============================================================================


class TestNoLookAhead:
    """The strategy only ever sees bars up to the current step."""

    def test_history_never_contains_future_bars(self, engine: BacktestEngine) -> None:
        probe = LookAheadProbe()
        bars = daily_bars("X", [100.0 + i for i in range(10)]) + daily_bars(
            "Y", [50.0 + i for i in range(5)], START + timedelta(days=3)
        )

        engine.run(make_request(["X", "Y"]), strategy=probe, bars=bars)

        assert probe.seen
        assert all(latest <= now for now, latest in probe.seen)

    def test_symbols_outside_request_are_ignored(self, engine: BacktestEngine) -> None:
        strategy = ScriptedStrategy({1: [("Z", BUY)]}, quantity=1)
        bars = daily_bars("X", [100.0, 101.0]) + daily_bars("Z", [10.0, 11.0])

        result = engine.run(make_request(["X"]), strategy=strategy, bars=bars)

        assert result.trades == []
        assert result.skipped_signals[0].reason == "no bar for symbol at this step"

    @pytest.mark.parametrize(
        "first_stamp",
        [
            START + timedelta(hours=15, minutes=30),
            datetime(2024, 1, 2, tzinfo=timezone(timedelta(hours=5, minutes=30))),
        ],
        ids=["utc_close_stamp", "ist_midnight"],
    )
    def test_daily_bars_off_midnight_still_trade(self, engine: BacktestEngine, first_stamp: datetime) -> None:
        bars = daily_bars("X", [100.0, 105.0, 110.0], first_stamp)

        result = engine.run(
            make_request(strategy="buy_and_hold", strategy_params={"quantity": 10}),
            bars=bars,
        )

        assert result.ok is True
        assert len(result.trades) == 1
        assert result.trades[0].entry_price == pytest.approx(100.0)
        assert result.trades[0].exit_reason == ExitReason.END_OF_PERIOD
        assert result.final_capital == pytest.approx(100100.0)

    def test_intraday_bars_grouped_by_timestamp(self, engine: BacktestEngine) -> None:
        start = datetime(2024, 1, 1, 9, 30, tzinfo=START.tzinfo)
        bars = [
            Bar(symbol=s, timeframe=Timeframe.M5, timestamp=start + timedelta(minutes=5 * i),
                open=p, high=p, low=p, close=p)
            for s, p in (("X", 100.0), ("Y", 50.0))
            for i in range(6)
        ]

        result = engine.run(
            make_request(["X", "Y"], timeframe=Timeframe.M5, strategy="buy_and_hold"),
            bars=bars,
        )

        assert len(result.equity_curve) == 6
        assert len(result.trades) == 2


# =============================================================================
# Failures
# =============================================================================


class _ExplodingFees:
    def quote(self, price: float, quantity: float, action: SignalAction) -> FeeQuote:
        raise ZeroDivisionError("bad schedule")


class _BrokenSource(MarketDataSource):
    def get_bars(self, symbols, start, end, timeframe):
        raise ConnectionError("feed offline")


class TestFailures:
    """Configuration errors raise; missing data and unknown strategies fail the run."""

    def test_end_before_start_raises(self, engine: BacktestEngine) -> None:
        request = BacktestRequest(symbols=["X"], start=START, end=START - timedelta(days=1))

        with pytest.raises(ConfigurationError):
            engine.run(request, bars=daily_bars("X", [100.0]))

    def test_no_data_in_range_fails_run(self, engine: BacktestEngine) -> None:
        bars = daily_bars("X", [100.0, 101.0], START + timedelta(days=365))

        result = engine.run(make_request(strategy="buy_and_hold"), bars=bars)

        assert result.ok is False
        assert result.status == RunStatus.FAILED
        assert result.errors
        assert result.trades == []

    def test_unknown_strategy_fails_run(self, engine: BacktestEngine) -> None:
        result = engine.run(make_request(strategy="does_not_exist"), bars=daily_bars("X", [100.0]))

        assert result.ok is False
        assert result.status == RunStatus.FAILED
        assert "does_not_exist" in result.errors[0]

    def test_strategy_exception_raises_collaborator_error(self, engine: BacktestEngine) -> None:
        with pytest.raises(CollaboratorError) as exc_info:
            engine.run(make_request(), strategy=FailingStrategy(fail_on=2), bars=daily_bars("X", [1.0, 2.0, 3.0]))

        assert exc_info.value.collaborator == "strategy"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.run_id is not None

    def test_fee_calculator_exception_raises_collaborator_error(self, settings: Settings) -> None:
        engine = BacktestEngine(fee_calculator=_ExplodingFees(), settings=settings)
        strategy = ScriptedStrategy({1: [("X", BUY)]})

        with pytest.raises(CollaboratorError) as exc_info:
            engine.run(make_request(include_fees=True), strategy=strategy, bars=daily_bars("X", [100.0, 101.0]))

        assert exc_info.value.collaborator == "fee_calculator"

    def test_failed_run_does_not_affect_next_run(self, engine: BacktestEngine) -> None:
        with pytest.raises(CollaboratorError):
            engine.run(make_request(), strategy=FailingStrategy(fail_on=1), bars=daily_bars("X", [100.0]))

        result = engine.run(
            make_request(),
            strategy=ScriptedStrategy({1: [("X", BUY)], 2: [("X", SELL)]}),
            bars=daily_bars("X", [100.0, 110.0]),
        )

        assert result.ok
        assert result.final_capital == pytest.approx(100100.0)

    def test_no_bars_and_no_source_raises(self, engine: BacktestEngine) -> None:
        with pytest.raises(ConfigurationError):
            engine.run(make_request(strategy="buy_and_hold"))


# =============================================================================
# Data Source and Settings
# =============================================================================


class TestDataSource:
    """Engine loading bars through a MarketDataSource."""

    def test_loads_bars_from_source(self, settings: Settings) -> None:
        source = InMemoryDataSource(daily_bars("X", [100.0, 110.0]) + daily_bars("Y", [10.0, 11.0]))
        engine = BacktestEngine(data_source=source, settings=settings)

        result = engine.run(make_request(["X"], strategy="buy_and_hold", strategy_params={"quantity": 10}))

        assert result.ok
        assert [t.symbol for t in result.trades] == ["X"]
        assert result.trades[0].pnl == pytest.approx(100.0)

    def test_source_failure_raises_collaborator_error(self, settings: Settings) -> None:
        engine = BacktestEngine(data_source=_BrokenSource(), settings=settings)

        with pytest.raises(CollaboratorError) as exc_info:
            engine.run(make_request(strategy="buy_and_hold"))

        assert exc_info.value.collaborator == "market_data_source"


class TestRequestResolution:
    """Unset request fields are filled from settings."""

    def test_defaults_from_settings(self, engine: BacktestEngine) -> None:
        request = BacktestRequest(symbols=["X"], start=START, end=START + timedelta(days=5))

        resolved = engine.resolve_request(request)

        assert resolved.initial_cash == 100000.0
        assert resolved.include_fees is True
        assert resolved.fee_accounting == FeeAccounting.NET
        assert resolved.risk_free_rate == pytest.approx(0.04)

    def test_request_values_take_precedence(self, engine: BacktestEngine) -> None:
        request = make_request(initial_cash=5000.0, risk_free_rate=0.01)

        resolved = engine.resolve_request(request)

        assert resolved.initial_cash == 5000.0
        assert resolved.include_fees is False
        assert resolved.risk_free_rate == pytest.approx(0.01)

    def test_run_without_initial_cash_uses_settings(self) -> None:
        engine = BacktestEngine(settings=Settings(_env_file=None, default_initial_cash=2500.0))
        request = BacktestRequest(
            symbols=["X"],
            strategy="buy_and_hold",
            strategy_params={"quantity": 10},
            start=START,
            end=START + timedelta(days=5),
            include_fees=False,
        )

        result = engine.run(request, bars=daily_bars("X", [100.0, 110.0]))

        assert result.initial_cash == 2500.0
        assert result.request.initial_cash == 2500.0
        assert result.final_capital == pytest.approx(2600.0)

    def test_request_accepts_aliases(self) -> None:
        request = BacktestRequest.model_validate(
            {
                "symbols": ["X"],
                "strategy_name": "momentum",
                "start_date": "2024-01-01T00:00:00",
                "end_date": "2024-02-01T00:00:00",
                "initial_capital": 2500.0,
            }
        )

        assert request.strategy == "momentum"
        assert request.initial_cash == 2500.0
        assert request.start.tzinfo is not None
