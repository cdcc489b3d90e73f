import abc
from typing import Any

import httpx
from loguru import logger

from barsync.errors import FetchError
from barsync.types import Bar, Resolution, Symbol, SymbolProperties, TimeWindow
from barsync.utils.rate_limiter import AsyncRateLimiter

# Default request-weight budget shared by all calls of one adapter.
DEFAULT_WEIGHT_LIMIT = 1200
DEFAULT_WEIGHT_PERIOD_S = 60.0


class ExchangeAdapter(abc.ABC):
    """An abstract base class for all exchange adapters.

    This class defines the capability interface the download cycle depends
    on: resolving a ticker to a tradable symbol, fetching historical bars for
    a time window, and listing the venue's symbol properties. It also provides
    a rate-limited JSON request helper that maps transport and HTTP failures
    to `FetchError`.

    Subclasses are responsible for the venue-specific details, such as REST
    endpoints, symbol formats and payload parsing.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        rate_limiter: AsyncRateLimiter | None = None,
        api_key: str | None = None,
    ) -> None:
        """Initializes the adapter.

        Args:
            http_client: A shared httpx.AsyncClient for making REST API calls.
            rate_limiter: Request-weight limiter. A default per-minute budget
                is created if omitted.
            api_key: Optional API key sent with every request.
        """
        self.http_client = http_client
        self.rate_limiter = rate_limiter or AsyncRateLimiter(
            DEFAULT_WEIGHT_LIMIT, DEFAULT_WEIGHT_PERIOD_S
        )
        self._api_key = api_key

    @property
    @abc.abstractmethod
    def venue_name(self) -> str:
        """A unique, lowercase identifier for the exchange (e.g., 'binance')."""
        raise NotImplementedError

    @property
    def market(self) -> str:
        """The dataset market name symbols of this venue are stored under."""
        return self.venue_name

    @property
    @abc.abstractmethod
    def base_api_url(self) -> str:
        """The REST API root URL, without a trailing slash."""
        raise NotImplementedError

    def _auth_headers(self) -> dict[str, str]:
        """Returns headers carrying the API key, if the venue uses one."""
        return {}

    async def _request_json(
        self, path: str, params: dict[str, Any] | None = None, weight: int = 1
    ) -> Any:
        """Performs a rate-limited GET request and decodes the JSON body.

        Raises:
            FetchError: On transport errors, non-2xx responses or bad JSON.
        """
        url = f"{self.base_api_url}{path}"
        logger.trace(f"[{self.venue_name}] GET {path} params={params}")
        async with self.rate_limiter.acquire(weight):
            try:
                response = await self.http_client.get(
                    url, params=params, headers=self._auth_headers()
                )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                body = e.response.text[:200]
                err_msg = (
                    f"[{self.venue_name}] HTTP {e.response.status_code} "
                    f"for {path}: {body}"
                )
                raise FetchError(err_msg) from e
            except httpx.HTTPError as e:
                err_msg = f"[{self.venue_name}] Request to {path} failed: {e!r}"
                raise FetchError(err_msg) from e
            except ValueError as e:
                err_msg = f"[{self.venue_name}] Invalid JSON from {path}: {e}"
                raise FetchError(err_msg) from e

    @abc.abstractmethod
    async def resolve_symbol(self, ticker: str) -> Symbol:
        """Maps a user-supplied ticker to a tradable symbol on this venue.

        Args:
            ticker: The ticker, e.g. 'BTCUSDT' or 'BTC/USDT'.

        Returns:
            The resolved Symbol.

        Raises:
            ResolutionError: If the ticker is not tradable on this venue.
            FetchError: If the venue's symbol list cannot be retrieved.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def get_historical_bars(
        self, symbol: Symbol, resolution: Resolution, window: TimeWindow
    ) -> list[Bar]:
        """Fetches historical OHLCV bars from the exchange's REST API.

        Args:
            symbol: A symbol previously returned by `resolve_symbol`.
            resolution: A concrete resolution (never `Resolution.ALL`).
            window: The half-open `[start, end)` range to fetch.

        Returns:
            Bars sorted ascending by open time, possibly empty.

        Raises:
            FetchError: If the request fails.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def get_symbol_properties(self) -> list[SymbolProperties]:
        """Fetches trading properties for every symbol listed on the venue.

        Raises:
            FetchError: If the request fails.
        """
        raise NotImplementedError
