from datetime import datetime, timedelta, timezone
from typing import Any, Final

from loguru import logger

# A heuristic to determine the unit of a numeric timestamp.
# If a timestamp (in seconds) is greater than this, it's likely in milliseconds.
MILLISECONDS_THRESHOLD: Final[int] = 10**10
# If a timestamp is greater than this, it's likely in microseconds.
MICROSECONDS_THRESHOLD: Final[int] = 10**13

# Date format of the --from-date/--to-date command-line options.
CLI_DATETIME_FORMAT: Final[str] = "%Y%m%d-%H:%M:%S"

EPOCH: Final[datetime] = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Returns the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc_datetime(timestamp: Any) -> datetime:
    """Normalizes a timestamp from various formats to an aware UTC datetime.

    This function can handle:
    - int, float: Unix timestamps in seconds, milliseconds or microseconds.
                  The unit is guessed by magnitude.
    - str: ISO 8601 strings, including a 'Z' suffix, or the compact
           'YYYYMMDD-HH:MM:SS' format used on the command line.
    - datetime: Naive datetimes are assumed to be UTC.

    Args:
        timestamp: The timestamp to normalize.

    Returns:
        A timezone-aware datetime in UTC.

    Raises:
        ValueError: If the timestamp format is unrecognized or invalid.
    """
    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            return timestamp.replace(tzinfo=timezone.utc)
        return timestamp.astimezone(timezone.utc)

    if isinstance(timestamp, int | float) and not isinstance(timestamp, bool):
        if timestamp > MICROSECONDS_THRESHOLD:
            ts_seconds = timestamp / 1_000_000
        elif timestamp > MILLISECONDS_THRESHOLD:
            ts_seconds = timestamp / 1_000
        else:
            ts_seconds = timestamp
        try:
            return datetime.fromtimestamp(ts_seconds, tz=timezone.utc)
        except (OSError, ValueError, OverflowError) as e:
            err_msg = f"Numeric timestamp '{timestamp}' is out of range."
            raise ValueError(err_msg) from e

    if isinstance(timestamp, str):
        text = timestamp.strip()
        try:
            parsed = datetime.strptime(text, CLI_DATETIME_FORMAT)
        except ValueError:
            try:
                if text.endswith("Z"):
                    text = text[:-1] + "+00:00"
                parsed = datetime.fromisoformat(text)
            except ValueError as e:
                logger.debug(f"Could not parse timestamp string '{timestamp}': {e}")
                err_msg = f"Invalid or unrecognized timestamp format: {timestamp}"
                raise ValueError(err_msg) from e
        return to_utc_datetime(parsed)

    err_msg = f"Unsupported timestamp type: {type(timestamp).__name__}"
    raise ValueError(err_msg)


def to_milliseconds(moment: datetime) -> int:
    """Converts an aware datetime to integer milliseconds since the epoch."""
    return (to_utc_datetime(moment) - EPOCH) // timedelta(milliseconds=1)


def from_milliseconds(ms: int) -> datetime:
    """Converts integer milliseconds since the epoch to a UTC datetime."""
    return EPOCH + timedelta(milliseconds=ms)


def floor_to_bucket(moment: datetime, bucket: timedelta) -> datetime:
    """Floors a datetime to the start of its epoch-aligned bucket.

    Raises:
        ValueError: If the bucket duration is not positive.
    """
    if bucket <= timedelta(0):
        err_msg = "Bucket duration must be positive."
        raise ValueError(err_msg)
    elapsed = to_utc_datetime(moment) - EPOCH
    return EPOCH + (elapsed // bucket) * bucket


def truncate_to_day(moment: datetime) -> datetime:
    """Drops the time-of-day part of a datetime, keeping it in UTC."""
    return floor_to_bucket(moment, timedelta(days=1))


def format_rfc3339(moment: datetime) -> str:
    """Formats a datetime as an RFC3339 UTC string with second precision.

    Example: "2023-10-27T10:00:00Z"
    """
    return to_utc_datetime(moment).isoformat(timespec="seconds").replace(
        "+00:00", "Z"
    )
