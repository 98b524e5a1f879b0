"""Runtime version metadata for the stream tracker.

Import-safe; no side effects.
"""

from __future__ import annotations

PROJECT_NAME = "holo-stream-tracker"
VERSION = "0.1.0"

__all__ = [
    "PROJECT_NAME",
    "VERSION",
    "as_string",
    "user_agent",
]


def as_string() -> str:
    """Return a concise version string."""

    return f"{PROJECT_NAME} {VERSION}"


def user_agent() -> str:
    return f"{PROJECT_NAME}/{VERSION}"
