import json
import logging
import sys
from pathlib import Path
from typing import Any, cast

from loguru import logger
from loguru._defaults import LOGURU_FORMAT

SENSITIVE_KEYS = frozenset({"api_key", "api_secret", "secret", "password", "token"})
REDACTED = "***REDACTED***"


class InterceptHandler(logging.Handler):
    """A custom logging handler to intercept standard logging messages.

    This handler redirects standard logging messages (e.g. from httpx) to Loguru.
    """

    def emit(self, record: logging.LogRecord) -> None:
        """Emits a log record to the Loguru logger.

        Args:
            record: The log record to emit.
        """
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = str(record.levelno)

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = cast(Any, frame.f_back)
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def _sensitive_data_filter(record: dict[str, Any]) -> bool:
    """Redacts sensitive values bound to a record's 'extra' data.

    Values of keys such as 'api_key' are replaced with '***REDACTED***'
    before the record reaches any sink. The record itself is never dropped.
    """
    for key, value in record["extra"].items():
        if key in SENSITIVE_KEYS and isinstance(value, str):
            record["extra"][key] = REDACTED
    return True


def _serialize_record(record: dict[str, Any]) -> str:
    """Renders a record as a single JSON line."""
    log_object = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "source": {
            "name": record["name"],
            "file": f"{record['file'].name}:{record['line']}",
            "function": record["function"],
        },
        "extra": {k: v for k, v in record["extra"].items() if k != "json"},
    }
    if record["exception"] is not None:
        log_object["exception"] = repr(record["exception"].value)
    return json.dumps(log_object, default=str)


def _json_format(record: dict[str, Any]) -> str:
    """Loguru format function: stores the JSON line and returns a template for it."""
    record["extra"]["json"] = _serialize_record(record)
    return "{extra[json]}\n"


def setup_logging(
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    log_dir: Path | None = None,
) -> None:
    """Configures the application-wide Loguru logger.

    This function removes any default handlers, sets up a new console sink
    with a readable format, and an optional daily-rotated file sink with
    structured JSON output. It also intercepts standard library logging.

    Args:
        console_level: The minimum log level for console output.
        file_level: The minimum log level for file output.
        log_dir: Directory to store log files. If None, file logging is disabled.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=console_level.upper(),
        format=LOGURU_FORMAT,
        colorize=True,
        filter=_sensitive_data_filter,
    )

    if log_dir:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "barsync_{time:YYYY-MM-DD}.log",
            level=file_level.upper(),
            format=_json_format,
            rotation="00:00",  # New file at midnight
            retention="7 days",
            compression="zip",
            filter=_sensitive_data_filter,
            enqueue=True,  # Make logging calls non-blocking
            backtrace=False,  # Keep log files clean
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # httpx logs every request at INFO; keep that out of the console.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.info("Logging configured successfully.")
