from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
import pytest_asyncio

from barsync.adapters import BinanceAdapter, BinanceUSAdapter, Venue, create_adapter
from barsync.adapters.binance import MAX_KLINES_PER_REQUEST
from barsync.errors import FetchError, ResolutionError
from barsync.types import Resolution, Symbol, TimeWindow
from barsync.utils.time import to_milliseconds

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
BTC = Symbol(ticker="BTCUSDT", venue="binance", market="binance")

EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "status": "TRADING",
            "quoteAsset": "USDT",
            "isSpotTradingAllowed": True,
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.01000000"},
                {"filterType": "LOT_SIZE", "stepSize": "0.00001000"},
                {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
            ],
        },
        {
            "symbol": "LUNAUSDT",
            "status": "BREAK",
            "quoteAsset": "USDT",
            "isSpotTradingAllowed": True,
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.00010000"},
                {"filterType": "LOT_SIZE", "stepSize": "0.01000000"},
            ],
        },
        {
            "symbol": "BTCUPUSDT",
            "status": "TRADING",
            "quoteAsset": "USDT",
            "isSpotTradingAllowed": False,
            "filters": [],
        },
        {
            "symbol": "BROKENUSDT",
            "status": "TRADING",
            "quoteAsset": "USDT",
            "filters": [{"filterType": "LOT_SIZE", "stepSize": "1"}],
        },
    ]
}


def kline(open_ms: int, price: str = "100", volume: str = "1") -> list[Any]:
    """Builds a Binance kline row."""
    return [open_ms, price, price, price, price, volume, open_ms + 59_999, "0", 1]


def klines_for(start_ms: int, end_ms: int, limit: int) -> list[list[Any]]:
    """Emulates the venue: minute klines in [start, end], capped at `limit`."""
    first = -(-start_ms // 60_000) * 60_000
    return [kline(ms) for ms in range(first, end_ms + 1, 60_000)][:limit]


Handler = Callable[[httpx.Request], httpx.Response]


@pytest_asyncio.fixture()
async def make_adapter() -> AsyncGenerator[Callable[..., BinanceAdapter], None]:
    """Provides a factory for adapters backed by an httpx.MockTransport."""
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Handler, cls: type[BinanceAdapter] = BinanceAdapter, **kw: Any):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return cls(client, **kw)

    yield _make
    for client in clients:
        await client.aclose()


def exchange_info_handler(calls: list[httpx.Request]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        assert request.url.path.endswith("/exchangeInfo")
        return httpx.Response(200, json=EXCHANGE_INFO)

    return handler


@pytest.mark.asyncio
async def test_resolve_symbol_normalizes_and_caches(make_adapter) -> None:
    """Tests ticker normalization and that the listing is fetched only once."""
    calls: list[httpx.Request] = []
    adapter = make_adapter(exchange_info_handler(calls))

    first = await adapter.resolve_symbol("btc/usdt")
    second = await adapter.resolve_symbol("BTC-USDT")

    assert first == second == BTC
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_resolve_symbol_unlisted_raises(make_adapter) -> None:
    """Tests that an unknown ticker is a resolution error."""
    adapter = make_adapter(exchange_info_handler([]))

    with pytest.raises(ResolutionError, match="not listed"):
        await adapter.resolve_symbol("DOGEEUR")
    with pytest.raises(ResolutionError, match="Empty"):
        await adapter.resolve_symbol(" / ")


@pytest.mark.asyncio
async def test_resolve_symbol_allows_halted_pairs(make_adapter) -> None:
    """Tests that non-trading pairs still resolve for history downloads."""
    adapter = make_adapter(exchange_info_handler([]))

    symbol = await adapter.resolve_symbol("LUNAUSDT")

    assert symbol.ticker == "LUNAUSDT"


@pytest.mark.asyncio
async def test_get_historical_bars_paginates(make_adapter) -> None:
    """Tests that a window larger than one page is fetched page by page."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        params = request.url.params
        assert params["symbol"] == "BTCUSDT"
        assert params["interval"] == "1m"
        rows = klines_for(
            int(params["startTime"]), int(params["endTime"]), int(params["limit"])
        )
        return httpx.Response(200, json=rows)

    adapter = make_adapter(handler)
    total = MAX_KLINES_PER_REQUEST * 2 + 500
    window = TimeWindow(START, START + timedelta(minutes=total))

    bars = await adapter.get_historical_bars(BTC, Resolution.MINUTE, window)

    assert len(requests) == 3
    assert len(bars) == total
    assert bars[0].open_time == START
    assert bars[-1].open_time == window.end - timedelta(minutes=1)
    times = [b.open_time for b in bars]
    assert times == sorted(set(times))
    # The window end is exclusive; Binance's endTime is inclusive.
    assert int(requests[0].url.params["endTime"]) == to_milliseconds(window.end) - 1


@pytest.mark.asyncio
async def test_get_historical_bars_parses_decimals(make_adapter) -> None:
    """Tests that prices and volumes are parsed exactly."""

    def handler(request: httpx.Request) -> httpx.Response:
        ms = to_milliseconds(START)
        return httpx.Response(200, json=[kline(ms, "42000.10", "0.00123")])

    adapter = make_adapter(handler)
    window = TimeWindow(START, START + timedelta(hours=1))

    (bar,) = await adapter.get_historical_bars(BTC, Resolution.HOUR, window)

    assert bar.close == Decimal("42000.10")
    assert bar.volume == Decimal("0.00123")
    assert bar.symbol == BTC


@pytest.mark.asyncio
async def test_get_historical_bars_drops_rows_outside_window(make_adapter) -> None:
    """Tests that stray rows returned by the venue are filtered out."""

    def handler(request: httpx.Request) -> httpx.Response:
        ms = to_milliseconds(START)
        rows = [kline(ms - 60_000), kline(ms), kline(ms + 60_000)]
        return httpx.Response(200, json=rows)

    adapter = make_adapter(handler)
    window = TimeWindow(START, START + timedelta(minutes=1))

    bars = await adapter.get_historical_bars(BTC, Resolution.MINUTE, window)

    assert [b.open_time for b in bars] == [START]


@pytest.mark.asyncio
async def test_get_historical_bars_empty_window_makes_no_request(
    make_adapter,
) -> None:
    """Tests that an empty window short-circuits."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    adapter = make_adapter(handler)

    assert await adapter.get_historical_bars(
        BTC, Resolution.MINUTE, TimeWindow(START, START)
    ) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="Internal Server Error"),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"code": -1121, "msg": "Invalid symbol."}),
        httpx.Response(200, json=[["garbage"]]),
    ],
)
async def test_get_historical_bars_failures_raise_fetch_error(
    make_adapter, response: httpx.Response
) -> None:
    """Tests that HTTP, JSON and payload failures surface as FetchError."""
    adapter = make_adapter(lambda request: response)
    window = TimeWindow(START, START + timedelta(hours=1))

    with pytest.raises(FetchError):
        await adapter.get_historical_bars(BTC, Resolution.MINUTE, window)


@pytest.mark.asyncio
async def test_transport_error_raises_fetch_error(make_adapter) -> None:
    """Tests that connection failures surface as FetchError."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter = make_adapter(handler)

    with pytest.raises(FetchError, match="failed"):
        await adapter.resolve_symbol("BTCUSDT")


@pytest.mark.asyncio
async def test_get_symbol_properties(make_adapter) -> None:
    """Tests extraction of tick size, lot size and minimum order size."""
    adapter = make_adapter(exchange_info_handler([]))

    properties = {p.symbol: p for p in await adapter.get_symbol_properties()}

    # Spot-disabled and incomplete entries are skipped.
    assert set(properties) == {"BTCUSDT", "LUNAUSDT"}
    btc = properties["BTCUSDT"]
    assert btc.market == "binance"
    assert btc.security_type == "crypto"
    assert btc.quote_currency == "USDT"
    assert btc.minimum_price_variation == Decimal("0.01")
    assert btc.lot_size == Decimal("0.00001")
    assert btc.minimum_order_size == Decimal("5")
    assert properties["LUNAUSDT"].minimum_order_size is None


@pytest.mark.asyncio
async def test_api_key_header(make_adapter) -> None:
    """Tests that a configured API key is sent with requests."""
    seen: list[httpx.Request] = []
    adapter = make_adapter(exchange_info_handler(seen), api_key="k3y")

    await adapter.resolve_symbol("BTCUSDT")

    assert seen[0].headers["X-MBX-APIKEY"] == "k3y"


@pytest.mark.asyncio
async def test_binance_us_uses_its_own_host(make_adapter) -> None:
    """Tests the Binance.US variant."""
    seen: list[httpx.Request] = []
    adapter = make_adapter(exchange_info_handler(seen), cls=BinanceUSAdapter)

    symbol = await adapter.resolve_symbol("BTCUSDT")

    assert seen[0].url.host == "api.binance.us"
    assert symbol.venue == symbol.market == "binanceus"


@pytest.mark.asyncio
async def test_create_adapter_dispatches_on_venue() -> None:
    """Tests venue dispatch."""
    async with httpx.AsyncClient() as client:
        assert type(create_adapter(Venue.BINANCE, client)) is BinanceAdapter
        assert type(create_adapter(Venue.BINANCEUS, client)) is BinanceUSAdapter
