"""
Error taxonomy for the stream tracker.

Transient errors are retried with backoff by whoever owns the call (poll
cycle or dispatched action). Permanent errors are never retried
automatically. Everything else here is raised to signal a degraded path
that the caller isolates and logs.
"""

from __future__ import annotations

from typing import Optional


class TrackerError(Exception):
    """Base class for stream tracker errors."""


# ======================================================================
# Upstream / remote call failures
# ======================================================================

class TransientApiError(TrackerError):
    """A remote call failed in a way that may succeed on retry."""


class RateLimited(TransientApiError):
    """
    The remote side asked us to slow down.

    `retry_after` is the server-provided wait in seconds, if any.
    """

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(TransientApiError):
    """Timeout, connection failure or 5xx response."""


class PermanentApiError(TrackerError):
    """
    A remote call failed in a way retrying cannot fix
    (permission denied, deleted parent resource, invalid credentials).
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DeserializeError(TrackerError):
    """An upstream payload (or a single entry of it) could not be decoded."""


# ======================================================================
# Local failures
# ======================================================================

class StateCorruption(TrackerError):
    """A persisted record failed to decode. Dropped and re-derived."""


class DispatchFailure(TrackerError):
    """An action exhausted its retry budget."""

    def __init__(self, action: str, stream_id: str, attempts: int, cause: Exception):
        super().__init__(
            f"{action} for stream {stream_id} failed after {attempts} attempt(s): {cause}"
        )
        self.action = action
        self.stream_id = stream_id
        self.attempts = attempts
        self.cause = cause


class ConfigError(TrackerError):
    """Boot-time configuration is unusable."""
