"""
Bar (OHLCV) domain model.

Represents a single price bar with open, high, low, close, and volume.
Bars are immutable: the engine only ever reads them.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class Timeframe(str, Enum):
    """Supported timeframes for price data."""

    M1 = "1m"  # 1 minute
    M5 = "5m"  # 5 minutes
    M15 = "15m"  # 15 minutes
    M30 = "30m"  # 30 minutes
    H1 = "1h"  # 1 hour
    H4 = "4h"  # 4 hours
    D1 = "1d"  # 1 day
    W1 = "1w"  # 1 week

    @property
    def minutes(self) -> int:
        """Return timeframe in minutes."""
        mapping = {
            "1m": 1,
            "5m": 5,
            "15m": 15,
            "30m": 30,
            "1h": 60,
            "4h": 240,
            "1d": 1440,
            "1w": 10080,
        }
        return mapping[self.value]

    @property
    def is_intraday(self) -> bool:
        return self.minutes < 1440

    def periods_per_year(self, annualization_days: int = 365) -> float:
        """Number of bars of this timeframe in one (calendar) year."""
        return annualization_days * 1440 / self.minutes

    def bucket_key(self, timestamp: datetime) -> datetime:
        """
        Grouping key for a bar timestamp.

        Intraday timeframes keep the exact instant; daily and weekly
        timeframes collapse to the calendar day (UTC midnight).
        """
        ts = timestamp.astimezone(UTC)
        if self.is_intraday:
            return ts
        return ts.replace(hour=0, minute=0, second=0, microsecond=0)


class InstrumentType(str, Enum):
    """Kind of instrument a bar was observed on."""

    EQUITY = "EQUITY"
    OPTION = "OPTION"


class OptionType(str, Enum):
    """Option right: call (CE) or put (PE)."""

    CALL = "CE"
    PUT = "PE"


class Bar(BaseModel):
    """
    A single OHLCV bar.

    Option bars additionally carry the contract terms needed to price
    Greeks: strike, right, expiry, implied volatility and the underlying.
    """

    # Identification
    symbol: str = Field(..., min_length=1, description="Instrument symbol")
    timeframe: Timeframe = Field(default=Timeframe.D1, description="Bar timeframe")
    timestamp: datetime = Field(..., description="Bar timestamp (UTC)")

    # OHLCV data
    open: float = Field(..., gt=0, description="Opening price")
    high: float = Field(..., gt=0, description="Highest price")
    low: float = Field(..., gt=0, description="Lowest price")
    close: float = Field(..., gt=0, description="Closing price")
    volume: float = Field(default=0.0, ge=0, description="Trading volume")

    # Option contract terms
    instrument_type: InstrumentType = Field(default=InstrumentType.EQUITY)
    strike_price: float | None = Field(default=None, gt=0)
    option_type: OptionType | None = None
    expiry: datetime | None = None
    implied_volatility: float | None = Field(default=None, gt=0)
    underlying_price: float | None = Field(default=None, gt=0)

    class Config:
        frozen = True  # Immutable once created

    @field_validator("timestamp", "expiry")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps are taken to be UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @model_validator(mode="after")
    def check_price_range(self) -> "Bar":
        """Validate low <= open/close <= high."""
        if self.high < max(self.open, self.close):
            raise ValueError("high must be >= open and close")
        if self.low > min(self.open, self.close):
            raise ValueError("low must be <= open and close")
        if self.instrument_type == InstrumentType.OPTION and (
            self.strike_price is None or self.option_type is None
        ):
            raise ValueError("option bars require strike_price and option_type")
        return self

    @property
    def is_option(self) -> bool:
        return self.instrument_type == InstrumentType.OPTION

    @property
    def typical(self) -> float:
        """Calculate typical price (HLC average)."""
        return (self.high + self.low + self.close) / 3

    def __hash__(self) -> int:
        return hash((self.symbol, self.timeframe, self.timestamp))
