"""Exception hierarchy for the downloader.

Every error raised by barsync derives from `BarsyncError`. Only
`ConfigurationError` is fatal to the process; the other errors are scoped to
a single ticker of a download cycle and are reported, not propagated.
"""


class BarsyncError(Exception):
    """Base class for all barsync errors."""


class ConfigurationError(BarsyncError):
    """Raised when required inputs are missing or invalid."""


class ResolutionError(BarsyncError):
    """Raised when a ticker cannot be mapped to a tradable symbol."""


class FetchError(BarsyncError):
    """Raised when fetching data from an exchange venue fails."""


class WriteError(BarsyncError):
    """Raised when persisting data to the local dataset fails."""


__all__ = [
    "BarsyncError",
    "ConfigurationError",
    "ResolutionError",
    "FetchError",
    "WriteError",
]
