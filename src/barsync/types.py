from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Final

from barsync.errors import ConfigurationError


class Resolution(str, Enum):
    """Granularity of a bar series.

    `ALL` is a request-only value: it means "fetch at minute resolution and
    also derive hour and daily bars". It never reaches an adapter or a writer.
    """

    MINUTE = "minute"
    HOUR = "hour"
    DAILY = "daily"
    ALL = "all"

    @classmethod
    def parse(cls, value: "str | Resolution") -> "Resolution":
        """Parses a resolution name case-insensitively.

        Raises:
            ConfigurationError: If the value is empty or not a known resolution.
        """
        if isinstance(value, Resolution):
            return value
        if not value or not value.strip():
            err_msg = "Resolution is required (Minute/Hour/Daily/All)."
            raise ConfigurationError(err_msg)
        try:
            return cls(value.strip().lower())
        except ValueError as e:
            err_msg = (
                f"Unknown resolution '{value}'. "
                f"Valid options: {[r.value for r in cls]}"
            )
            raise ConfigurationError(err_msg) from e

    @property
    def fetch_resolution(self) -> "Resolution":
        """The resolution actually requested from the venue."""
        return Resolution.MINUTE if self is Resolution.ALL else self

    def expand(self) -> tuple["Resolution", ...]:
        """Returns the concrete resolutions to be written, raw one first."""
        if self is Resolution.ALL:
            return (Resolution.MINUTE, *DERIVED_RESOLUTIONS)
        return (self,)

    @property
    def duration(self) -> timedelta:
        if self is Resolution.ALL:
            err_msg = "Resolution.ALL has no bar duration."
            raise ValueError(err_msg)
        return _DURATIONS[self]

    @property
    def interval(self) -> str:
        """The kline interval string used by Binance-style REST APIs."""
        if self is Resolution.ALL:
            err_msg = "Resolution.ALL has no venue interval."
            raise ValueError(err_msg)
        return _INTERVALS[self]


_DURATIONS: Final[dict[Resolution, timedelta]] = {
    Resolution.MINUTE: timedelta(minutes=1),
    Resolution.HOUR: timedelta(hours=1),
    Resolution.DAILY: timedelta(days=1),
}

_INTERVALS: Final[dict[Resolution, str]] = {
    Resolution.MINUTE: "1m",
    Resolution.HOUR: "1h",
    Resolution.DAILY: "1d",
}

# Resolutions derived from the raw minute fetch when ALL is requested.
DERIVED_RESOLUTIONS: Final[tuple[Resolution, ...]] = (
    Resolution.HOUR,
    Resolution.DAILY,
)


@dataclass(frozen=True)
class Symbol:
    """A tradable instrument identity on a venue.

    Attributes:
        ticker: The venue ticker, e.g. 'BTCUSDT'.
        venue: Lowercase venue identifier, e.g. 'binance'.
        market: The dataset market name the symbol is stored under.
    """

    ticker: str
    venue: str
    market: str

    def __str__(self) -> str:
        return f"{self.ticker}@{self.market}"


@dataclass(frozen=True)
class Bar:
    """An OHLCV trade bar at a fixed resolution. `open_time` is UTC."""

    symbol: Symbol
    open_time: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass(frozen=True)
class TimeWindow:
    """A half-open `[start, end)` time range in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            err_msg = "TimeWindow bounds must be timezone-aware."
            raise ValueError(err_msg)
        if self.start > self.end:
            err_msg = f"TimeWindow start {self.start} is after end {self.end}."
            raise ValueError(err_msg)

    def __contains__(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True)
class SymbolProperties:
    """One row of the symbol-properties database."""

    market: str
    symbol: str
    security_type: str
    description: str
    quote_currency: str
    contract_multiplier: Decimal
    minimum_price_variation: Decimal
    lot_size: Decimal
    market_ticker: str
    minimum_order_size: Decimal | None = None
