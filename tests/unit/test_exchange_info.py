from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from pytest_mock import MockerFixture

from barsync.adapters.base import ExchangeAdapter
from barsync.errors import FetchError
from barsync.exchange_info import ExchangeInfoUpdater
from barsync.persistence import SYMBOL_PROPERTIES_FILE, SymbolPropertiesWriter
from barsync.types import SymbolProperties


def create_properties(symbol: str) -> SymbolProperties:
    return SymbolProperties(
        market="binance",
        symbol=symbol,
        security_type="crypto",
        description=symbol,
        quote_currency="USDT",
        contract_multiplier=Decimal(1),
        minimum_price_variation=Decimal("0.01"),
        lot_size=Decimal("0.001"),
        market_ticker=symbol,
    )


@pytest.fixture()
def adapter(mocker: MockerFixture) -> Any:
    mock = mocker.AsyncMock(spec=ExchangeAdapter)
    mock.venue_name = "binance"
    mock.market = "binance"
    return mock


@pytest.mark.asyncio
async def test_update_writes_venue_rows(adapter: Any, tmp_path: Path) -> None:
    """Tests that the venue listing ends up in the properties database."""
    adapter.get_symbol_properties.return_value = [
        create_properties("ETHUSDT"),
        create_properties("BTCUSDT"),
    ]
    updater = ExchangeInfoUpdater(adapter, SymbolPropertiesWriter(tmp_path))

    count = await updater.run()

    assert count == 2
    lines = (tmp_path / SYMBOL_PROPERTIES_FILE).read_text().splitlines()
    assert lines[1].startswith("binance,BTCUSDT,crypto,BTCUSDT,USDT,1,0.01,0.001")
    assert lines[2].startswith("binance,ETHUSDT,")


@pytest.mark.asyncio
async def test_empty_listing_leaves_database_untouched(
    adapter: Any, mocker: MockerFixture
) -> None:
    """Tests that an empty venue response never wipes the market."""
    adapter.get_symbol_properties.return_value = []
    writer = mocker.AsyncMock(spec=SymbolPropertiesWriter)

    assert await ExchangeInfoUpdater(adapter, writer).run() == 0
    writer.replace_market.assert_not_awaited()


@pytest.mark.asyncio
async def test_fetch_errors_propagate(adapter: Any, mocker: MockerFixture) -> None:
    """Tests that the one-shot updater reports download failures to its caller."""
    adapter.get_symbol_properties.side_effect = FetchError("HTTP 418")
    writer = mocker.AsyncMock(spec=SymbolPropertiesWriter)

    with pytest.raises(FetchError):
        await ExchangeInfoUpdater(adapter, writer).run()
    writer.replace_market.assert_not_awaited()
