"""
Argument validation shared by the bus entry points.

Every check raises ``InvalidArgument``; the bus funnels the error to its
error channel before re-raising it to the caller.
"""

from __future__ import annotations

from typing import Any

from .errors import InvalidArgument


def validate_event_name(event: Any, what: str = "event") -> str:
    """
    Ensure ``event`` is a non-empty string.

    Args:
        event: Event name or pattern supplied by the caller
        what: Label used in the error message

    Returns:
        The validated name

    Raises:
        InvalidArgument: If the name is missing, not a string or blank
    """
    if not isinstance(event, str) or not event.strip():
        raise InvalidArgument(f"{what} must be a non-empty string, got {event!r}")
    return event


def validate_callable(obj: Any, what: str) -> None:
    """Raise ``InvalidArgument`` unless ``obj`` is callable."""
    if not callable(obj):
        raise InvalidArgument(f"{what} must be callable, got {type(obj).__name__}")


def validate_non_negative(value: Any, what: str) -> float:
    """Ensure ``value`` is a real number >= 0 and return it as float."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgument(f"{what} must be a number, got {type(value).__name__}")
    if value < 0:
        raise InvalidArgument(f"{what} must be >= 0, got {value}")
    return float(value)


def validate_int(value: Any, what: str, minimum: int | None = None) -> int:
    """Ensure ``value`` is an int (not bool), optionally no smaller than ``minimum``."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{what} must be an integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        raise InvalidArgument(f"{what} must be >= {minimum}, got {value}")
    return value
