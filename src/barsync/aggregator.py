from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from decimal import Decimal

from loguru import logger

from barsync.types import DERIVED_RESOLUTIONS, Bar, Resolution
from barsync.utils.time import floor_to_bucket


def aggregate(bars: Sequence[Bar], bucket: timedelta) -> list[Bar]:
    """Groups fine-resolution bars into coarser, epoch-aligned time buckets.

    Each non-empty bucket yields one bar whose open is the first bar's open,
    close is the last bar's close, high/low are the extremes and volume is
    the sum of the contributing volumes. Its open time is the bucket start.
    Buckets without input bars produce no output.

    Args:
        bars: Bars of a single symbol, sorted ascending by open time.
        bucket: The target bar duration, e.g. one hour.

    Returns:
        The aggregated bars, sorted ascending by open time.

    Raises:
        ValueError: If the bars belong to more than one symbol, are not
            sorted, or the bucket duration is not positive.
    """
    if bucket <= timedelta(0):
        err_msg = "Bucket duration must be positive."
        raise ValueError(err_msg)
    if not bars:
        return []

    symbol = bars[0].symbol
    output: list[Bar] = []
    current_start = None
    group: list[Bar] = []

    for bar in bars:
        if bar.symbol != symbol:
            err_msg = f"Cannot aggregate bars of {symbol} and {bar.symbol} together."
            raise ValueError(err_msg)
        if group and bar.open_time < group[-1].open_time:
            err_msg = "Bars must be sorted ascending by open time."
            raise ValueError(err_msg)

        start = floor_to_bucket(bar.open_time, bucket)
        if start != current_start and group:
            output.append(_merge(group, current_start))
            group = []
        current_start = start
        group.append(bar)

    output.append(_merge(group, current_start))
    return output


def _merge(group: list[Bar], start: datetime) -> Bar:
    """Collapses a non-empty, time-ordered group of bars into one bar."""
    return Bar(
        symbol=group[0].symbol,
        open_time=start,
        open=group[0].open,
        high=max(b.high for b in group),
        low=min(b.low for b in group),
        close=group[-1].close,
        volume=sum((b.volume for b in group), start=Decimal(0)),
    )


class BarAggregator:
    """Derives coarser resolutions from a single raw bar series."""

    def __init__(
        self, resolutions: Iterable[Resolution] = DERIVED_RESOLUTIONS
    ) -> None:
        self.resolutions = tuple(resolutions)
        if Resolution.ALL in self.resolutions:
            err_msg = "Resolution.ALL cannot be derived; expand it first."
            raise ValueError(err_msg)

    def derive(self, bars: Sequence[Bar]) -> dict[Resolution, list[Bar]]:
        """Aggregates `bars` into every configured resolution.

        Returns:
            An insertion-ordered mapping of resolution to aggregated bars.
            Resolutions with no input data map to an empty list.
        """
        derived = {res: aggregate(bars, res.duration) for res in self.resolutions}
        if bars:
            logger.debug(
                f"[{bars[0].symbol.ticker}] Derived "
                + ", ".join(f"{len(v)} {k.value}" for k, v in derived.items())
                + f" bars from {len(bars)} raw bars."
            )
        return derived
