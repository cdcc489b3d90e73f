"""Command-line entry point.

Usage:
    barsync download --venue binance --tickers BTCUSDT,ETHUSDT \\
        --resolution all --from-date 20240101-00:00:00 [--to-date ...] \\
        [--destination-dir DIR] [--interval-hours 12] [--once]
    barsync update-symbols --venue binanceus [--destination-dir DIR]
    barsync set-credentials --venue binance

Values not given on the command line are taken from the TOML configuration
file (see `barsync.config`).
"""

import argparse
import asyncio
import getpass
import sys
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path

import httpx
import keyring.errors
from loguru import logger

from barsync import __version__
from barsync.adapters import Venue, create_adapter
from barsync.config import (
    CONFIG_FILE,
    Settings,
    get_api_credentials,
    load_config,
    set_api_credentials,
)
from barsync.cycle import DownloadCycle, require_inputs
from barsync.errors import BarsyncError, ConfigurationError
from barsync.exchange_info import ExchangeInfoUpdater
from barsync.logging_config import setup_logging
from barsync.persistence import DatasetWriter, SymbolPropertiesWriter
from barsync.scheduler import JobState, RecurringScheduler
from barsync.utils.time import to_utc_datetime


def _parse_csv_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


def _parse_date(value: str, option: str) -> datetime:
    try:
        return to_utc_datetime(value)
    except ValueError as e:
        err_msg = f"Invalid {option} '{value}'; expected YYYYMMDD-HH:MM:SS."
        raise ConfigurationError(err_msg) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="barsync",
        description="Scheduled historical bar downloader for crypto venues.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--config", type=Path, default=CONFIG_FILE, help="Path to config.toml."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    dl = sub.add_parser("download", help="Download bars on a recurring schedule.")
    dl.add_argument("--venue", help="binance or binanceus.")
    dl.add_argument("--tickers", help="Comma-separated tickers, e.g. BTCUSDT.")
    dl.add_argument("--resolution", help="Minute/Hour/Daily/All.")
    dl.add_argument("--from-date", help="Start, YYYYMMDD-HH:MM:SS (UTC).")
    dl.add_argument("--to-date", help="Optional end, YYYYMMDD-HH:MM:SS (UTC).")
    dl.add_argument("--destination-dir", type=Path, help="Dataset root directory.")
    dl.add_argument("--interval-hours", type=float, help="Hours between cycles.")
    dl.add_argument("--max-concurrency", type=int, help="Tickers fetched at once.")
    dl.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit."
    )

    spu = sub.add_parser("update-symbols", help="Refresh symbol properties.")
    spu.add_argument("--venue", help="binance or binanceus.")
    spu.add_argument("--destination-dir", type=Path, help="Dataset root directory.")

    cred = sub.add_parser("set-credentials", help="Store API keys in the keyring.")
    cred.add_argument("--venue", required=True, help="binance or binanceus.")
    return parser


def _http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        http2=True,
        timeout=settings.downloader.http_timeout_s,
        follow_redirects=True,
    )


def _data_directory(args: argparse.Namespace, settings: Settings) -> Path:
    if args.destination_dir:
        return args.destination_dir
    return Path(settings.persistence.data_directory).expanduser()


async def run_download(args: argparse.Namespace, settings: Settings) -> int:
    """Validates the download inputs, then runs one or many cycles."""
    dl = settings.downloader
    venue = Venue.parse(args.venue or dl.venue)
    tickers = _parse_csv_list(args.tickers) or list(dl.tickers)
    resolution = args.resolution or dl.resolution
    require_inputs(tickers, resolution)

    from_value = args.from_date or dl.from_date
    if not from_value:
        err_msg = "'--from-date=' parameter is missing"
        raise ConfigurationError(err_msg)
    from_date = _parse_date(from_value, "--from-date")
    to_value = args.to_date or dl.to_date
    to_date = _parse_date(to_value, "--to-date") if to_value else None
    if to_date is not None and to_date < from_date:
        err_msg = "'--to-date' must not be before '--from-date'."
        raise ConfigurationError(err_msg)

    interval_hours = (
        args.interval_hours if args.interval_hours is not None else dl.interval_hours
    )
    max_concurrency = (
        args.max_concurrency
        if args.max_concurrency is not None
        else dl.max_concurrency
    )
    if interval_hours <= 0 or max_concurrency <= 0:
        err_msg = "Interval and concurrency must be positive."
        raise ConfigurationError(err_msg)

    state = JobState.create(tickers, resolution, from_date, to_date)
    data_dir = _data_directory(args, settings)
    api_key, _ = get_api_credentials(venue.value)

    async with _http_client(settings) as client:
        adapter = create_adapter(venue, client, api_key=api_key)
        cycle = DownloadCycle(
            adapter, DatasetWriter(data_dir), max_concurrency=max_concurrency
        )
        scheduler = RecurringScheduler(
            cycle, state, interval=timedelta(hours=interval_hours)
        )
        logger.info(
            f"[{venue.value}] Downloading {state.resolution.value} bars for "
            f"{', '.join(state.tickers)} into '{data_dir}'."
        )
        if args.once:
            runs_before = scheduler.snapshot().runs
            report = await scheduler.fire()
            if report is None:
                # A crashed cycle is counted but yields no report.
                return 1 if scheduler.snapshot().runs > runs_before else 0
            return 1 if report.failed else 0
        await scheduler.run_forever()
    return 0


async def run_update_symbols(args: argparse.Namespace, settings: Settings) -> int:
    venue = Venue.parse(args.venue or settings.downloader.venue)
    data_dir = _data_directory(args, settings)
    api_key, _ = get_api_credentials(venue.value)
    async with _http_client(settings) as client:
        adapter = create_adapter(venue, client, api_key=api_key)
        await ExchangeInfoUpdater(adapter, SymbolPropertiesWriter(data_dir)).run()
    return 0


def run_set_credentials(args: argparse.Namespace) -> int:
    venue = Venue.parse(args.venue)
    api_key = getpass.getpass(f"{venue.value} API key: ")
    api_secret = getpass.getpass(f"{venue.value} API secret: ")
    try:
        set_api_credentials(venue.value, api_key, api_secret)
    except keyring.errors.KeyringError as e:
        logger.error(f"Could not store credentials in keyring: {e}")
        return 1
    return 0


def _print_usage_and_fail(parser: argparse.ArgumentParser, message: str) -> int:
    print(f"\nERROR: {message}", file=sys.stderr)
    print("\nUse the '--help' parameter for more information", file=sys.stderr)
    parser.print_usage(sys.stderr)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_config(args.config)
    except ConfigurationError as e:
        return _print_usage_and_fail(parser, str(e))
    setup_logging(
        console_level=settings.general.log_level_console,
        file_level=settings.general.log_level_file,
        log_dir=Path(settings.general.log_directory).expanduser(),
    )

    try:
        if args.command == "download":
            return asyncio.run(run_download(args, settings))
        if args.command == "update-symbols":
            return asyncio.run(run_update_symbols(args, settings))
        return run_set_credentials(args)
    except ConfigurationError as e:
        return _print_usage_and_fail(parser, str(e))
    except BarsyncError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down.")
        return 0
