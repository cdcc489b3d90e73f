# src/barsync/adapters/__init__.py
"""This package contains the exchange-specific adapters.

Each adapter implements the `ExchangeAdapter` capability interface from
`barsync.adapters.base`: symbol resolution, historical bar download and
symbol-properties listing. The supported venues are enumerated by `Venue`,
which is resolved once from configuration and then dispatched through
`create_adapter`.
"""

from enum import Enum

import httpx

from barsync.adapters.base import ExchangeAdapter
from barsync.adapters.binance import BinanceAdapter, BinanceUSAdapter
from barsync.errors import ConfigurationError
from barsync.utils.rate_limiter import AsyncRateLimiter


class Venue(str, Enum):
    """Exchange venues barsync can download from."""

    BINANCE = "binance"
    BINANCEUS = "binanceus"

    @classmethod
    def parse(cls, value: "str | Venue") -> "Venue":
        """Parses a venue name or one of the legacy application aliases.

        Raises:
            ConfigurationError: If the name matches no supported venue.
        """
        if isinstance(value, Venue):
            return value
        key = (value or "").strip().lower()
        venue = _ALIASES.get(key)
        if venue is None:
            err_msg = (
                f"Unrecognized venue '{value}'. "
                f"Valid options: {[v.value for v in cls]}"
            )
            raise ConfigurationError(err_msg)
        return venue


_ALIASES: dict[str, Venue] = {
    "binance": Venue.BINANCE,
    "binancedownloader": Venue.BINANCE,
    "mbxdl": Venue.BINANCE,
    "binancesymbolpropertiesupdater": Venue.BINANCE,
    "mbxspu": Venue.BINANCE,
    "binanceus": Venue.BINANCEUS,
    "binanceusdownloader": Venue.BINANCEUS,
    "mbxusdl": Venue.BINANCEUS,
    "binanceussymbolpropertiesupdater": Venue.BINANCEUS,
    "mbxusspu": Venue.BINANCEUS,
}

_ADAPTER_CLASSES: dict[Venue, type[ExchangeAdapter]] = {
    Venue.BINANCE: BinanceAdapter,
    Venue.BINANCEUS: BinanceUSAdapter,
}


def create_adapter(
    venue: Venue,
    http_client: httpx.AsyncClient,
    rate_limiter: AsyncRateLimiter | None = None,
    api_key: str | None = None,
) -> ExchangeAdapter:
    """Instantiates the adapter implementing the given venue."""
    adapter_cls = _ADAPTER_CLASSES[venue]
    return adapter_cls(http_client, rate_limiter=rate_limiter, api_key=api_key)


__all__ = [
    "ExchangeAdapter",
    "BinanceAdapter",
    "BinanceUSAdapter",
    "Venue",
    "create_adapter",
]
