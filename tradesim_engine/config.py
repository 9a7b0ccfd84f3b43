"""
Configuration management for the tradesim engine.

Uses pydantic-settings for type-safe environment variable handling.
Every value can be overridden with a TRADESIM_ prefixed variable.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    These are defaults only: requests and analysis configs can override
    most of them per run.
    """

    model_config = SettingsConfigDict(
        env_prefix="TRADESIM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_json: bool = Field(
        default=False,
        description="Emit JSON formatted log lines",
    )

    # Simulation defaults
    default_initial_cash: float = Field(
        default=100000.0,
        gt=0,
        description="Starting capital when a request does not set one",
    )
    include_fees: bool = Field(
        default=True,
        description="Charge transaction costs on entries and exits",
    )
    fee_accounting: str = Field(
        default="net",
        description="Trade P&L convention: 'net' subtracts fees, 'gross' reports them separately",
    )

    # Metrics
    risk_free_rate: float = Field(
        default=0.04,
        ge=0.0,
        le=1.0,
        description="Annual risk-free rate used by Sharpe and Sortino",
    )
    annualization_days: int = Field(
        default=365,
        ge=1,
        le=366,
        description="Calendar days per year used for annualization",
    )

    # Walk-forward
    walk_forward_max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Thread pool size for walk-forward sub-runs",
    )

    # Monte Carlo
    monte_carlo_simulations: int = Field(
        default=1000,
        ge=1,
        description="Number of bootstrap resamples",
    )
    monte_carlo_confidence: float = Field(
        default=0.95,
        gt=0.0,
        lt=1.0,
        description="Confidence level for the outcome interval",
    )
    monte_carlo_drawdown_threshold: float = Field(
        default=0.10,
        gt=0.0,
        description="Drawdown fraction counted by probability_of_drawdown",
    )
    monte_carlo_seed: int | None = Field(
        default=None,
        description="Seed for reproducible resampling",
    )
    monte_carlo_max_workers: int = Field(
        default=1,
        ge=1,
        le=64,
        description="Thread pool size for resampling chunks",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("fee_accounting")
    @classmethod
    def validate_fee_accounting(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in {"net", "gross"}:
            raise ValueError(f"Invalid fee accounting: {v}. Must be 'net' or 'gross'")
        return v_lower


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Use this function to access settings throughout the application.
    Settings are loaded once and cached for performance.
    """
    return Settings()
