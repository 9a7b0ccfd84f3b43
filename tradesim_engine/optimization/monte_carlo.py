"""
Monte Carlo resampling of realized trade P&L.

Each simulation draws len(trades) P&L values with replacement from the
realized sequence and replays them as a mini equity curve. This treats
trade outcomes as exchangeable (i.i.d.): serial correlation, regime
changes and position overlap in the original run are not preserved, so
the resulting spread is an approximation of outcome uncertainty.

Simulations are split into fixed-size chunks, each seeded from a child of
one SeedSequence. Results for a given seed are identical whatever the
number of worker threads.
"""

import math
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from tradesim_engine.backtest.errors import ConfigurationError
from tradesim_engine.backtest.models import BacktestResult
from tradesim_engine.config import Settings, get_settings
from tradesim_engine.logging import get_logger
from tradesim_engine.optimization.models import MonteCarloConfig, MonteCarloSummary

logger = get_logger(__name__)


def _simulate_chunk(
    pnls: np.ndarray,
    size: int,
    seed: np.random.SeedSequence,
    initial_capital: float,
    drawdown_threshold: float,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Resample one chunk of paths.

    Returns (total_returns, drawdown_breached), both of length size.
    """
    if pnls.size == 0:
        return np.zeros(size), np.zeros(size, dtype=bool)

    rng = np.random.default_rng(seed)
    samples = rng.choice(pnls, size=(size, pnls.size), replace=True)
    totals = samples.sum(axis=1) / initial_capital

    equity = initial_capital + np.cumsum(samples, axis=1)
    equity = np.hstack([np.full((size, 1), initial_capital), equity])
    # Peaks never fall below initial_capital, which is positive
    peaks = np.maximum.accumulate(equity, axis=1)
    max_drawdown = ((peaks - equity) / peaks).max(axis=1)

    return totals, max_drawdown > drawdown_threshold


class MonteCarloSimulator:
    """Bootstrap simulator over the trade P&L of one completed run."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    def default_config(self) -> MonteCarloConfig:
        s = self._settings
        return MonteCarloConfig(
            simulations=s.monte_carlo_simulations,
            confidence_level=s.monte_carlo_confidence,
            drawdown_threshold=s.monte_carlo_drawdown_threshold,
            seed=s.monte_carlo_seed,
            max_workers=s.monte_carlo_max_workers,
        )

    @staticmethod
    def validate_config(config: MonteCarloConfig, initial_capital: float) -> None:
        """
        Raises:
            ConfigurationError: On non-positive counts, capital or threshold, or a
                confidence level outside (0, 1)
        """
        if config.simulations <= 0:
            raise ConfigurationError("simulations must be positive")
        if not 0.0 < config.confidence_level < 1.0:
            raise ConfigurationError("confidence_level must be in (0, 1)")
        if config.drawdown_threshold <= 0:
            raise ConfigurationError("drawdown_threshold must be positive")
        if config.chunk_size <= 0 or config.max_workers <= 0:
            raise ConfigurationError("chunk_size and max_workers must be positive")
        if initial_capital <= 0:
            raise ConfigurationError("initial_capital must be positive")

    def run(
        self,
        trade_pnls: Sequence[float],
        initial_capital: float,
        config: MonteCarloConfig | None = None,
    ) -> MonteCarloSummary:
        """
        Resample trade P&L and summarize the simulated total returns.

        Args:
            trade_pnls: Realized fee-inclusive P&L per trade, in close order
            initial_capital: Capital the returns are measured against
            config: Resampling settings; defaults from Settings

        Returns:
            MonteCarloSummary over config.simulations paths
        """
        config = config or self.default_config()
        self.validate_config(config, initial_capital)

        pnls = np.asarray(trade_pnls, dtype=float)
        n_sims = config.simulations
        sizes = [config.chunk_size] * (n_sims // config.chunk_size)
        if n_sims % config.chunk_size:
            sizes.append(n_sims % config.chunk_size)
        seeds = np.random.SeedSequence(config.seed).spawn(len(sizes))

        def _chunk(i: int) -> tuple[np.ndarray, np.ndarray]:
            return _simulate_chunk(pnls, sizes[i], seeds[i], initial_capital, config.drawdown_threshold)

        if config.max_workers > 1 and len(sizes) > 1:
            with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
                chunks = list(pool.map(_chunk, range(len(sizes))))
        else:
            chunks = [_chunk(i) for i in range(len(sizes))]

        totals = np.concatenate([c[0] for c in chunks])
        breached = np.concatenate([c[1] for c in chunks])
        ordered = np.sort(totals)

        lower_index = math.floor((1.0 - config.confidence_level) * n_sims)
        upper_index = min(math.floor(config.confidence_level * n_sims), n_sims - 1)

        summary = MonteCarloSummary(
            simulations=n_sims,
            trade_count=int(pnls.size),
            confidence_level=config.confidence_level,
            drawdown_threshold=config.drawdown_threshold,
            realized_return=float(pnls.sum() / initial_capital),
            expected_return=float(totals.mean()),
            expected_volatility=float(totals.std()),
            worst_case=float(ordered[0]),
            best_case=float(ordered[-1]),
            confidence_lower=float(ordered[lower_index]),
            confidence_upper=float(ordered[upper_index]),
            probability_of_loss=float((totals < 0).mean()),
            probability_of_drawdown=float(breached.mean()),
            return_distribution=ordered.tolist(),
        )

        logger.info(
            "Monte Carlo: %d simulations over %d trades, expected=%.4f, P(loss)=%.3f, P(DD>%.0f%%)=%.3f",
            n_sims,
            summary.trade_count,
            summary.expected_return,
            summary.probability_of_loss,
            config.drawdown_threshold * 100,
            summary.probability_of_drawdown,
        )
        return summary

    def run_for_result(
        self,
        result: BacktestResult,
        config: MonteCarloConfig | None = None,
    ) -> MonteCarloSummary:
        """
        Resample the trades of a completed backtest.

        Uses fee-inclusive P&L so the expected return converges to the run's
        total_return whatever its fee accounting convention.
        """
        if not result.ok:
            raise ConfigurationError(f"Cannot resample failed run {result.run_id}")
        return self.run([t.net_pnl for t in result.trades], result.initial_cash, config)
