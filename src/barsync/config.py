from dataclasses import dataclass, field, is_dataclass
from pathlib import Path
import sys
import tomllib
from typing import Any, TypeVar

import keyring
import keyring.errors
from loguru import logger

from barsync.errors import ConfigurationError

# --- Constants ---
APP_NAME = "barsync"
# Use a platform-agnostic user config directory
if sys.platform == "win32":
    CONFIG_DIR = Path.home() / "AppData" / "Roaming" / APP_NAME
else:
    CONFIG_DIR = Path.home() / ".config" / APP_NAME

CONFIG_FILE = CONFIG_DIR / "config.toml"

# --- Keyring Service Name ---
KEYRING_SERVICE_NAME = f"{APP_NAME.lower()}-api-keys"

DEFAULT_CONFIG_TEMPLATE = """\
# Barsync Configuration File
# Uncomment and edit settings to override the defaults.

# [general]
# log_level_console = "INFO"
# log_level_file = "DEBUG"

# [downloader]
# venue = "binance"
# tickers = ["BTCUSDT", "ETHUSDT"]
# resolution = "all"
# from_date = "20240101-00:00:00"
# interval_hours = 12

# [persistence]
# data_directory = "~/barsync-data"
"""

# --- Dataclass Models for Settings ---
T = TypeVar("T")


@dataclass
class GeneralSettings:
    """General application settings."""

    log_level_console: str = "INFO"
    log_level_file: str = "DEBUG"
    log_directory: str = str(CONFIG_DIR / "logs")


@dataclass
class DownloaderSettings:
    """What to download, and how often."""

    venue: str = "binance"
    tickers: list[str] = field(default_factory=list)
    resolution: str = ""
    # 'YYYYMMDD-HH:MM:SS' or ISO 8601; empty means not configured.
    from_date: str = ""
    to_date: str = ""
    interval_hours: float = 12.0
    max_concurrency: int = 4
    http_timeout_s: float = 20.0


@dataclass
class PersistenceSettings:
    """Settings for the local dataset."""

    data_directory: str = str(Path.home() / "barsync-data")


@dataclass
class Settings:
    """Root container for all application settings."""

    general: GeneralSettings = field(default_factory=GeneralSettings)
    downloader: DownloaderSettings = field(default_factory=DownloaderSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)


def _update_dataclass(dc_instance: T, data: dict[str, Any]) -> T:
    """Recursively updates a dataclass instance from a dictionary."""
    known = set(field_names(dc_instance))
    for key in data.keys() - known:
        logger.warning(
            f"Ignoring unknown setting '{key}' in "
            f"[{type(dc_instance).__name__}]."
        )
    for f in known:
        if f in data:
            field_value = getattr(dc_instance, f)
            if is_dataclass(field_value):
                if isinstance(data[f], dict):
                    _update_dataclass(field_value, data[f])
                else:
                    logger.warning(f"Setting '{f}' must be a table; ignored.")
            else:
                setattr(dc_instance, f, _checked_value(f, field_value, data[f]))
    return dc_instance


def _checked_value(name: str, default: Any, value: Any) -> Any:
    """Validates a TOML value against the type of the field's default.

    Integers are accepted for float fields. List fields must hold strings.

    Raises:
        ConfigurationError: If the value has the wrong type.
    """
    if isinstance(value, bool) != isinstance(default, bool):
        pass
    elif isinstance(default, float) and isinstance(value, int | float):
        return float(value)
    elif isinstance(default, list):
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
    elif isinstance(value, type(default)):
        return value
    err_msg = (
        f"Setting '{name}' must be of type {type(default).__name__}, "
        f"got {type(value).__name__} ({value!r})."
    )
    raise ConfigurationError(err_msg)


def field_names(dc_instance: Any) -> list[str]:
    """Helper to get field names from a dataclass instance."""
    return [f.name for f in dc_instance.__dataclass_fields__.values()]


def load_config(path: Path = CONFIG_FILE, create_default: bool = True) -> Settings:
    """Loads settings from a TOML file, merging them with defaults.

    If the config file does not exist and `create_default` is set, a commented
    template is written in its place.

    Args:
        path: The path to the configuration file.
        create_default: Whether to create a template file when missing.

    Returns:
        A populated Settings object.

    Raises:
        ConfigurationError: If a setting has the wrong type.
    """
    settings_obj = Settings()
    logger.info(f"Loading configuration from '{path}'...")

    if not path.exists():
        logger.warning(f"Configuration file not found at '{path}'; using defaults.")
        if create_default:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
                logger.info(f"Created a configuration template at '{path}'.")
            except OSError as e:
                logger.error(f"Failed to create default config file: {e}")
        return settings_obj

    try:
        with path.open("rb") as f:
            user_config = tomllib.load(f)
        _update_dataclass(settings_obj, user_config)
        logger.success("Successfully loaded user configuration.")
    except tomllib.TOMLDecodeError as e:
        logger.error(f"Error decoding TOML from '{path}': {e}")
        logger.warning("Using default settings due to configuration error.")
        settings_obj = Settings()
    except OSError as e:
        logger.error(f"Could not read configuration file '{path}': {e}")
        logger.warning("Using default settings due to configuration error.")

    return settings_obj


# --- Keyring Management ---


def get_api_credentials(venue_name: str) -> tuple[str | None, str | None]:
    """Retrieves API key and secret for a given venue from the system keyring.

    Args:
        venue_name: The lower-case name of the venue (e.g., 'binance').

    Returns:
        A tuple containing (api_key, api_secret). Returns (None, None) if not found.
    """
    venue_name = venue_name.lower()
    try:
        api_key = keyring.get_password(KEYRING_SERVICE_NAME, f"{venue_name}_key")
        api_secret = keyring.get_password(
            KEYRING_SERVICE_NAME, f"{venue_name}_secret"
        )
        if api_key or api_secret:
            logger.debug(f"Retrieved credentials for '{venue_name}' from keyring.")
        return api_key, api_secret
    except keyring.errors.KeyringError as e:
        logger.warning(f"Could not retrieve credentials from keyring: {e}")
        return None, None


def set_api_credentials(venue_name: str, api_key: str, api_secret: str) -> None:
    """Stores API key and secret for a venue in the system keyring.

    Raises:
        keyring.errors.KeyringError: If no usable keyring backend is available.
    """
    venue_name = venue_name.lower()
    keyring.set_password(KEYRING_SERVICE_NAME, f"{venue_name}_key", api_key)
    keyring.set_password(KEYRING_SERVICE_NAME, f"{venue_name}_secret", api_secret)
    logger.info(f"Successfully stored credentials for '{venue_name}' in keyring.")
