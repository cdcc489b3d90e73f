# src/barsync/__init__.py
"""Barsync: a scheduled historical market-data downloader for crypto venues.

This package periodically fetches historical trade bars (klines) from an
exchange, derives coarser resolutions from the raw minute bars, and keeps a
local CSV dataset up to date.

The application is built around Python's asyncio: tickers of one download
cycle are fetched concurrently over a shared HTTP client, while cycles
themselves never overlap.

Key modules and sub-packages:
- `adapters`: Connectors for the supported exchange venues.
- `cycle`: One fetch-aggregate-write pass over all configured tickers.
- `scheduler`: The recurring trigger and the rolling download window.
- `persistence`: The CSV dataset and symbol-properties writers.
- `utils`: Shared utilities like time helpers and rate limiters.
"""

import importlib.metadata

try:
    __version__: str = importlib.metadata.version("barsync")
except importlib.metadata.PackageNotFoundError:
    # Not installed, e.g. running from a source checkout.
    __version__ = "0.0.0-dev"
