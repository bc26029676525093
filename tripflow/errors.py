"""Exception types raised inside the core.

None of these escape a public entry point: callers log them and fall back to a
no-op, an empty result or the locally cached copy.
"""

from __future__ import annotations


class TripflowError(Exception):
    """Base class for all tripflow errors."""


class RemoteError(TripflowError):
    """A call to the remote backend failed (network, HTTP status or payload)."""

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}" if detail else f"{operation} failed")


class DirectionsError(TripflowError):
    """The directions provider returned a non-OK status or an unusable payload."""


class StoreCorruptedError(TripflowError):
    """The persisted local store could not be read back with the current schema."""
