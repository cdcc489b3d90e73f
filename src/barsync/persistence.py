import asyncio
import csv
import io
from collections import defaultdict
from collections.abc import Iterable, Sequence
from decimal import Decimal
from pathlib import Path

import aiofiles
import aiofiles.os
from loguru import logger

from barsync.errors import WriteError
from barsync.types import Bar, Resolution, Symbol, SymbolProperties
from barsync.utils.time import format_rfc3339

# --- Constants ---

# The header row for all generated bar files.
BAR_CSV_HEADER: list[str] = ["time", "open", "high", "low", "close", "volume"]

# The header row of the symbol-properties database.
SYMBOL_PROPERTIES_HEADER: list[str] = [
    "market",
    "symbol",
    "type",
    "description",
    "quote_currency",
    "contract_multiplier",
    "minimum_price_variation",
    "lot_size",
    "market_ticker",
    "minimum_order_size",
]

SECURITY_TYPE_DIR = "crypto"
SYMBOL_PROPERTIES_FILE = Path("symbol-properties") / "symbol-properties-database.csv"


def _format_decimal(value: Decimal | None) -> str:
    """Renders a Decimal without exponent notation; None becomes an empty cell."""
    if value is None:
        return ""
    return format(value, "f")


def _render_csv(header: list[str], rows: Iterable[list[str]]) -> str:
    string_io = io.StringIO()
    writer = csv.writer(string_io, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return string_io.getvalue()


async def _read_csv_rows(path: Path) -> list[list[str]]:
    """Reads a CSV file, skipping its header. A missing file yields no rows."""
    if not await aiofiles.os.path.exists(path):
        return []
    async with aiofiles.open(path, encoding="utf-8", newline="") as f:
        content = await f.read()
    rows = list(csv.reader(io.StringIO(content)))
    return [row for row in rows[1:] if row]


async def _replace_file(path: Path, content: str) -> None:
    """Writes `content` to a temp file next to `path` and renames it over `path`."""
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    async with aiofiles.open(tmp_path, mode="w", encoding="utf-8", newline="") as f:
        await f.write(content)
        await f.flush()
    await aiofiles.os.replace(tmp_path, path)


class DatasetWriter:
    """Persists bars to a local CSV dataset with overwrite-by-time semantics.

    Layout under the data root:
        crypto/<market>/minute/<ticker>/<YYYYMMDD>_trade.csv  (one file per day)
        crypto/<market>/<hour|daily>/<ticker>_trade.csv       (one file per symbol)

    Writing merges the new bars into whatever a file already holds: rows with
    the same open time are replaced, others are kept. Re-writing an
    overlapping window is therefore idempotent. Each file is rewritten through
    a temporary file and an atomic rename, so readers never observe a
    partially written file. All disk I/O goes through `aiofiles` to keep the
    event loop responsive while other tickers are downloading.
    """

    def __init__(self, data_directory: Path) -> None:
        """Initializes the writer.

        Args:
            data_directory: The root directory of the dataset.
        """
        self.data_directory = Path(data_directory)
        self._file_locks: defaultdict[Path, asyncio.Lock] = defaultdict(asyncio.Lock)

    def path_for(self, resolution: Resolution, symbol: Symbol, bar: Bar) -> Path:
        """Determines the file a bar belongs to."""
        if resolution is Resolution.ALL:
            err_msg = "Resolution.ALL must be expanded before writing."
            raise ValueError(err_msg)
        base = (
            self.data_directory
            / SECURITY_TYPE_DIR
            / symbol.market.lower()
            / resolution.value
        )
        ticker = symbol.ticker.lower()
        if resolution is Resolution.MINUTE:
            return base / ticker / f"{bar.open_time:%Y%m%d}_trade.csv"
        return base / f"{ticker}_trade.csv"

    @staticmethod
    def _format_bar(bar: Bar) -> list[str]:
        return [
            format_rfc3339(bar.open_time),
            _format_decimal(bar.open),
            _format_decimal(bar.high),
            _format_decimal(bar.low),
            _format_decimal(bar.close),
            _format_decimal(bar.volume),
        ]

    async def write(
        self, resolution: Resolution, symbol: Symbol, bars: Sequence[Bar]
    ) -> None:
        """Merges `bars` into the dataset files of `symbol` at `resolution`.

        An empty `bars` sequence is a no-op.

        Raises:
            WriteError: If a file cannot be read, parsed or written.
        """
        if not bars:
            logger.debug(
                f"[{symbol.ticker}] No {resolution.value} bars to write; skipping."
            )
            return

        bars_by_file: defaultdict[Path, list[Bar]] = defaultdict(list)
        for bar in bars:
            bars_by_file[self.path_for(resolution, symbol, bar)].append(bar)

        for path, file_bars in bars_by_file.items():
            async with self._file_locks[path]:
                try:
                    await self._merge_into(path, file_bars)
                except (OSError, csv.Error, UnicodeDecodeError) as e:
                    err_msg = f"[{symbol.ticker}] Failed to write {path}: {e}"
                    raise WriteError(err_msg) from e

        logger.info(
            f"[{symbol.ticker}] Wrote {len(bars)} {resolution.value} bars "
            f"to {len(bars_by_file)} file(s)."
        )

    async def _merge_into(self, path: Path, bars: list[Bar]) -> None:
        existing = await _read_csv_rows(path)
        rows_by_time = {row[0]: row for row in existing}
        for bar in bars:
            formatted = self._format_bar(bar)
            rows_by_time[formatted[0]] = formatted
        # RFC3339 UTC strings of equal precision sort chronologically.
        merged = [rows_by_time[key] for key in sorted(rows_by_time)]
        await _replace_file(path, _render_csv(BAR_CSV_HEADER, merged))


class SymbolPropertiesWriter:
    """Maintains the symbol-properties database CSV.

    Updating a market replaces all of that market's rows and keeps the rows
    of every other market untouched.
    """

    def __init__(self, data_directory: Path) -> None:
        self.path = Path(data_directory) / SYMBOL_PROPERTIES_FILE

    @staticmethod
    def _format_row(props: SymbolProperties) -> list[str]:
        return [
            props.market,
            props.symbol,
            props.security_type,
            props.description,
            props.quote_currency,
            _format_decimal(props.contract_multiplier),
            _format_decimal(props.minimum_price_variation),
            _format_decimal(props.lot_size),
            props.market_ticker,
            _format_decimal(props.minimum_order_size),
        ]

    async def replace_market(
        self, market: str, properties: Sequence[SymbolProperties]
    ) -> int:
        """Overwrites the rows of `market` with `properties`.

        Returns:
            The number of rows written for the market.

        Raises:
            WriteError: If the database cannot be read or written.
        """
        market_key = market.lower()
        try:
            existing = await _read_csv_rows(self.path)
            kept = [row for row in existing if row[0].lower() != market_key]
            fresh = [self._format_row(p) for p in properties]
            merged = sorted(kept + fresh, key=lambda row: (row[0], row[1]))
            await _replace_file(
                self.path, _render_csv(SYMBOL_PROPERTIES_HEADER, merged)
            )
        except (OSError, csv.Error, UnicodeDecodeError) as e:
            err_msg = f"Failed to update symbol properties at {self.path}: {e}"
            raise WriteError(err_msg) from e

        logger.info(
            f"Updated {len(fresh)} '{market_key}' rows in '{self.path}' "
            f"({len(kept)} rows of other markets kept)."
        )
        return len(fresh)
