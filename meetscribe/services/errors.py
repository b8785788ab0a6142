"""Error taxonomy for the capture pipeline.

Only ``FatalSessionError`` is allowed to stop a session. Everything else is
absorbed where it happens: retried, turned into an abandoned sequence number,
or reported as a degraded status.
"""

from __future__ import annotations


class TranscriberError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class FatalSessionError(TranscriberError):
    """Invalid credential or missing mandatory audio source; aborts the session."""


class RetryableUnitError(TranscriberError):
    """Rate limiting, server failure or transport failure for one unit."""


class DroppedUnitError(TranscriberError):
    """One unit is abandoned; the session keeps running."""

    def __init__(self, message: str, *, reason: str = "client_error", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class DegradedCapabilityError(TranscriberError):
    """An optional capability (the microphone) is unavailable."""


__all__ = [
    "TranscriberError",
    "FatalSessionError",
    "RetryableUnitError",
    "DroppedUnitError",
    "DegradedCapabilityError",
]
