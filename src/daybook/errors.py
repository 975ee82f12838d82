"""Exception hierarchy shared across daybook services.

Services raise these; the dispatcher and the HTTP layer decide what the
user gets to see.
"""

from __future__ import annotations

__all__ = [
    "DaybookError",
    "ValidationError",
    "NotFoundError",
    "StoreError",
    "UpstreamError",
    "ConfigurationError",
]


class DaybookError(Exception):
    """Base class for all daybook errors."""


class ValidationError(DaybookError):
    """Caller supplied a missing or malformed field.

    The message is safe to return to clients verbatim.
    """


class NotFoundError(DaybookError):
    """A referenced record does not exist."""


class StoreError(DaybookError):
    """The persistent store failed to execute an operation."""


class UpstreamError(DaybookError):
    """The speech model service could not be reached or dropped the link."""


class ConfigurationError(DaybookError):
    """Required configuration is missing or unsupported."""
