import asyncio
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Final

from loguru import logger

from barsync.adapters.base import ExchangeAdapter
from barsync.errors import FetchError, ResolutionError
from barsync.types import Bar, Resolution, Symbol, SymbolProperties, TimeWindow
from barsync.utils.time import from_milliseconds, to_milliseconds

# Maximum number of klines Binance returns per request.
MAX_KLINES_PER_REQUEST: Final[int] = 1000

# Request weights as documented by Binance for the endpoints we call.
KLINES_WEIGHT: Final[int] = 2
EXCHANGE_INFO_WEIGHT: Final[int] = 20


class BinanceAdapter(ExchangeAdapter):
    """Adapter for the Binance spot REST API."""

    _BASE_API_URL: str = "https://api.binance.com/api/v3"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        # Raw '/exchangeInfo' symbol entries keyed by venue ticker; loaded once.
        self._listed_symbols: dict[str, dict[str, Any]] | None = None
        self._listing_lock = asyncio.Lock()

    @property
    def venue_name(self) -> str:
        """Returns the unique, lowercase identifier for the exchange."""
        return "binance"

    @property
    def base_api_url(self) -> str:
        return self._BASE_API_URL

    def _auth_headers(self) -> dict[str, str]:
        # Market data endpoints are public; a key only raises the rate ceiling.
        return {"X-MBX-APIKEY": self._api_key} if self._api_key else {}

    @staticmethod
    def _normalize_ticker_to_venue(ticker: str) -> str:
        """Converts 'btc/usdt', 'BTC-USDT' or 'BTCUSDT' to Binance's 'BTCUSDT'."""
        return ticker.strip().replace("/", "").replace("-", "").upper()

    async def _get_exchange_info(self) -> dict[str, Any]:
        payload = await self._request_json(
            "/exchangeInfo", weight=EXCHANGE_INFO_WEIGHT
        )
        if not isinstance(payload, dict) or not isinstance(
            payload.get("symbols"), list
        ):
            err_msg = f"[{self.venue_name}] Unexpected exchangeInfo payload."
            raise FetchError(err_msg)
        return payload

    async def _listed(self) -> dict[str, dict[str, Any]]:
        """Returns the venue's symbol listing, fetching it on first use."""
        async with self._listing_lock:
            if self._listed_symbols is None:
                payload = await self._get_exchange_info()
                self._listed_symbols = {
                    entry["symbol"]: entry
                    for entry in payload["symbols"]
                    if isinstance(entry, dict) and "symbol" in entry
                }
                logger.debug(
                    f"[{self.venue_name}] Loaded {len(self._listed_symbols)} "
                    "listed symbols."
                )
            return self._listed_symbols

    async def resolve_symbol(self, ticker: str) -> Symbol:
        venue_ticker = self._normalize_ticker_to_venue(ticker)
        if not venue_ticker:
            err_msg = f"[{self.venue_name}] Empty ticker."
            raise ResolutionError(err_msg)

        listed = await self._listed()
        entry = listed.get(venue_ticker)
        if entry is None:
            err_msg = (
                f"[{self.venue_name}] Ticker '{ticker}' is not listed on "
                f"{self.venue_name}."
            )
            raise ResolutionError(err_msg)

        status = entry.get("status", "TRADING")
        if status != "TRADING":
            # Historical data is still available for halted or delisted pairs.
            logger.warning(
                f"[{self.venue_name}] {venue_ticker} has status {status}; "
                "downloading history anyway."
            )
        return Symbol(ticker=venue_ticker, venue=self.venue_name, market=self.market)

    def _parse_kline(self, symbol: Symbol, row: Any) -> Bar:
        """Parses one kline row: [open time, open, high, low, close, volume, ...]."""
        try:
            return Bar(
                symbol=symbol,
                open_time=from_milliseconds(int(row[0])),
                open=Decimal(str(row[1])),
                high=Decimal(str(row[2])),
                low=Decimal(str(row[3])),
                close=Decimal(str(row[4])),
                volume=Decimal(str(row[5])),
            )
        except (IndexError, TypeError, ValueError, InvalidOperation) as e:
            err_msg = f"[{self.venue_name}] Malformed kline for {symbol}: {row!r}"
            raise FetchError(err_msg) from e

    async def get_historical_bars(
        self, symbol: Symbol, resolution: Resolution, window: TimeWindow
    ) -> list[Bar]:
        """Fetches historical OHLCV data from Binance's REST API."""
        interval = resolution.interval
        step_ms = resolution.duration // timedelta(milliseconds=1)
        current_start_ms = to_milliseconds(window.start)
        end_ms = to_milliseconds(window.end)
        bars: dict[int, Bar] = {}

        logger.info(
            f"[{self.venue_name}] Fetching {resolution.value} bars for "
            f"{symbol.ticker} from {window.start} to {window.end}"
        )

        while current_start_ms < end_ms:
            params = {
                "symbol": symbol.ticker,
                "interval": interval,
                "startTime": current_start_ms,
                # endTime is inclusive on Binance; the window end is not.
                "endTime": end_ms - 1,
                "limit": MAX_KLINES_PER_REQUEST,
            }
            data = await self._request_json("/klines", params, weight=KLINES_WEIGHT)
            if not isinstance(data, list):
                err_msg = f"[{self.venue_name}] Unexpected klines payload: {data!r}"
                raise FetchError(err_msg)
            if not data:
                break  # No more data

            for row in data:
                bar = self._parse_kline(symbol, row)
                if bar.open_time in window:
                    bars[int(row[0])] = bar

            last_open_ms = int(data[-1][0])
            if len(data) < MAX_KLINES_PER_REQUEST or last_open_ms < current_start_ms:
                break
            current_start_ms = last_open_ms + step_ms

        sorted_bars = [bars[k] for k in sorted(bars)]
        logger.success(
            f"[{self.venue_name}] Fetched {len(sorted_bars)} unique "
            f"{resolution.value} bars for {symbol.ticker}."
        )
        return sorted_bars

    def _symbol_properties_from_entry(
        self, entry: dict[str, Any]
    ) -> SymbolProperties | None:
        """Builds a SymbolProperties row from one '/exchangeInfo' symbol entry."""
        filters = {f.get("filterType"): f for f in entry.get("filters", [])}
        try:
            tick_size = Decimal(filters["PRICE_FILTER"]["tickSize"]).normalize()
            step_size = Decimal(filters["LOT_SIZE"]["stepSize"]).normalize()
            notional = filters.get("NOTIONAL") or filters.get("MIN_NOTIONAL") or {}
            min_notional = notional.get("minNotional")
            return SymbolProperties(
                market=self.market,
                symbol=entry["symbol"],
                security_type="crypto",
                description=entry["symbol"],
                quote_currency=entry["quoteAsset"],
                contract_multiplier=Decimal(1),
                minimum_price_variation=tick_size,
                lot_size=step_size,
                market_ticker=entry["symbol"],
                minimum_order_size=(
                    Decimal(min_notional).normalize() if min_notional else None
                ),
            )
        except (KeyError, TypeError, InvalidOperation) as e:
            logger.warning(
                f"[{self.venue_name}] Skipping symbol "
                f"{entry.get('symbol', '?')} with incomplete filters: {e!r}"
            )
            return None

    async def get_symbol_properties(self) -> list[SymbolProperties]:
        """Fetches spot symbol properties from Binance's '/exchangeInfo'."""
        payload = await self._get_exchange_info()
        properties = []
        for entry in payload["symbols"]:
            if not isinstance(entry, dict):
                continue
            if not entry.get("isSpotTradingAllowed", True):
                continue
            row = self._symbol_properties_from_entry(entry)
            if row is not None:
                properties.append(row)

        logger.info(
            f"[{self.venue_name}] Retrieved properties for {len(properties)} symbols."
        )
        return properties


class BinanceUSAdapter(BinanceAdapter):
    """Adapter for the Binance.US REST API.

    Binance.US serves the same protocol as Binance from a separate host and
    lists a different set of symbols.
    """

    _BASE_API_URL: str = "https://api.binance.us/api/v3"

    @property
    def venue_name(self) -> str:
        return "binanceus"
