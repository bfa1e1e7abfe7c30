"""
Wildcard pattern matching for event names.

Event names are dot-segmented (``user.login``). A pattern has the same
shape, and any segment may be ``*`` to match exactly one event segment:

    matches("user.login", "user.*")          -> True
    matches("user.login.success", "user.*")  -> False  (segment counts differ)
    matches("order.created", "*.created")    -> True

There is no multi-segment wildcard and no partial-segment globbing.
"""

from __future__ import annotations

WILDCARD = "*"
SEPARATOR = "."


def matches(event_name: str, pattern: str) -> bool:
    """
    Check whether ``event_name`` matches ``pattern``.

    Args:
        event_name: Concrete event name being dispatched
        pattern: Pattern a listener was registered under

    Returns:
        True if every pattern segment is ``*`` or equal to the event segment
        at the same position and both have the same number of segments
    """
    event_parts = event_name.split(SEPARATOR)
    pattern_parts = pattern.split(SEPARATOR)

    if len(event_parts) != len(pattern_parts):
        return False

    return all(
        part == WILDCARD or part == event_part
        for part, event_part in zip(pattern_parts, event_parts)
    )
