"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import Generator

import pytest

from tradesim_engine.backtest.engine import BacktestEngine
from tradesim_engine.config import Settings, get_settings
from tradesim_engine.logging import clear_run_id


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure no TRADESIM_ overrides leak into tests from the environment."""
    for var in list(os.environ):
        if var.upper().startswith("TRADESIM_"):
            monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached settings and the log context between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    clear_run_id()


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only (no .env file)."""
    return Settings(_env_file=None)


@pytest.fixture
def engine(settings: Settings) -> BacktestEngine:
    """Engine with default collaborators and no data source."""
    return BacktestEngine(settings=settings)
