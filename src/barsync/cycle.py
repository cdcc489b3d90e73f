import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from barsync.adapters.base import ExchangeAdapter
from barsync.aggregator import BarAggregator
from barsync.errors import ConfigurationError, FetchError, ResolutionError, WriteError
from barsync.persistence import DatasetWriter
from barsync.types import Resolution, TimeWindow

DEFAULT_MAX_CONCURRENCY = 4

USAGE_HINT = "--tickers=eg BTCUSDT\n--resolution=Minute/Hour/Daily/All"


class TickerOutcome(str, Enum):
    """How the processing of one ticker in a cycle ended."""

    WRITTEN = "written"
    EMPTY = "empty"
    UNRESOLVED = "unresolved"
    FETCH_FAILED = "fetch_failed"
    WRITE_FAILED = "write_failed"
    ERROR = "error"


@dataclass
class TickerResult:
    """The per-ticker record of a download cycle."""

    ticker: str
    outcome: TickerOutcome
    raw_bars: int = 0
    written: list[Resolution] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (TickerOutcome.WRITTEN, TickerOutcome.EMPTY)


@dataclass
class CycleReport:
    """Outcome of one download cycle, in ticker order."""

    window: TimeWindow
    resolution: Resolution
    results: list[TickerResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[TickerResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[TickerResult]:
        return [r for r in self.results if not r.ok]


def require_inputs(
    tickers: Sequence[str], resolution: "Resolution | str | None"
) -> Resolution:
    """Validates the inputs every cycle needs.

    Returns:
        The parsed resolution.

    Raises:
        ConfigurationError: If tickers or resolution are missing or invalid.
    """
    if not tickers or not any(t.strip() for t in tickers) or not resolution:
        err_msg = (
            "'--tickers=' or '--resolution=' parameter is missing\n" + USAGE_HINT
        )
        raise ConfigurationError(err_msg)
    return Resolution.parse(resolution)


class DownloadCycle:
    """One fetch-aggregate-write pass over a list of tickers.

    For each ticker the cycle resolves the venue symbol, downloads the raw
    bars of the window, writes them, and, when all resolutions are requested,
    derives and writes hour and daily bars from the raw minute bars.

    Tickers are processed concurrently, up to `max_concurrency` at a time.
    A failure is confined to its ticker: it is logged and recorded in the
    returned `CycleReport`, and the remaining tickers proceed. The cycle does
    not retry; the next scheduled cycle covers the window again.
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        writer: DatasetWriter,
        aggregator: BarAggregator | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        if max_concurrency <= 0:
            err_msg = "max_concurrency must be a positive integer."
            raise ValueError(err_msg)
        self.adapter = adapter
        self.writer = writer
        self.aggregator = aggregator or BarAggregator()
        self.max_concurrency = max_concurrency

    async def run(
        self,
        tickers: Sequence[str],
        resolution: "Resolution | str",
        window: TimeWindow,
    ) -> CycleReport:
        """Runs the cycle and returns once every ticker has been processed.

        Raises:
            ConfigurationError: If tickers or resolution are missing.
        """
        requested = require_inputs(tickers, resolution)
        report = CycleReport(window=window, resolution=requested)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def guarded(ticker: str) -> TickerResult:
            async with semaphore:
                return await self._process_ticker(ticker, requested, window)

        report.results = list(
            await asyncio.gather(*(guarded(t) for t in tickers if t.strip()))
        )

        logger.info(
            f"Cycle over [{window.start}, {window.end}) finished: "
            f"{len(report.succeeded)} ok, {len(report.failed)} failed."
        )
        return report

    async def _process_ticker(
        self, ticker: str, requested: Resolution, window: TimeWindow
    ) -> TickerResult:
        """Processes one ticker; never raises except on cancellation."""
        result = TickerResult(ticker=ticker, outcome=TickerOutcome.WRITTEN)
        try:
            symbol = await self.adapter.resolve_symbol(ticker)

            fetch_resolution = requested.fetch_resolution
            bars = await self.adapter.get_historical_bars(
                symbol, fetch_resolution, window
            )
            if not bars:
                logger.info(f"[{ticker}] No data in window; skipping.")
                result.outcome = TickerOutcome.EMPTY
                return result
            result.raw_bars = len(bars)

            await self.writer.write(fetch_resolution, symbol, bars)
            result.written.append(fetch_resolution)

            if requested is Resolution.ALL:
                for res, derived in self.aggregator.derive(bars).items():
                    await self.writer.write(res, symbol, derived)
                    result.written.append(res)

        except ResolutionError as e:
            logger.error(f"[{ticker}] Symbol resolution failed: {e}")
            result.outcome, result.error = TickerOutcome.UNRESOLVED, str(e)
        except FetchError as e:
            logger.error(f"[{ticker}] Download failed: {e}")
            result.outcome, result.error = TickerOutcome.FETCH_FAILED, str(e)
        except WriteError as e:
            logger.error(
                f"[{ticker}] Write failed; remaining resolutions skipped: {e}"
            )
            result.outcome, result.error = TickerOutcome.WRITE_FAILED, str(e)
        except Exception as e:
            logger.exception(f"[{ticker}] Unexpected error while processing ticker.")
            result.outcome, result.error = TickerOutcome.ERROR, repr(e)
        return result
