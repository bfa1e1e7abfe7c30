"""
Bounded per-event emission history and derived statistics.

Each event name keeps its own log, newest entry first. When a log grows past
``max_size`` the oldest entry is evicted. History lives only as long as the
bus that owns it.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

DEFAULT_MAX_HISTORY_SIZE = 100


@dataclass(slots=True)
class HistoryEntry:
    """
    One recorded emission.

    ``processing_time`` is filled in (seconds) once the listener pass for the
    emission completes; it stays ``None`` while the event is still queued.
    """

    data: Any
    timestamp: float = field(default_factory=time.time)
    processing_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "data": self.data,
            "processing_time": self.processing_time,
        }


@dataclass(frozen=True, slots=True)
class EventStats:
    """Summary of one event name's history."""

    total_emissions: int
    last_emitted: float | None
    listener_count: int
    average_processing_time: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_emissions": self.total_emissions,
            "last_emitted": self.last_emitted,
            "listener_count": self.listener_count,
            "average_processing_time": self.average_processing_time,
        }


class HistoryStore:
    """Per-event bounded history logs."""

    def __init__(self, max_size: int = DEFAULT_MAX_HISTORY_SIZE):
        self.max_size = max_size
        self._logs: dict[str, deque[HistoryEntry]] = {}
        self._lock = threading.Lock()

    def record(self, event: str, data: Any) -> HistoryEntry:
        """Prepend a new entry for ``event`` and return it."""
        entry = HistoryEntry(data=data)
        with self._lock:
            log = self._logs.get(event)
            if log is None:
                log = self._logs[event] = deque(maxlen=self.max_size)
            log.appendleft(entry)
        return entry

    def get(self, event: str) -> list[HistoryEntry]:
        """Entries for ``event``, newest first."""
        with self._lock:
            return list(self._logs.get(event, ()))

    def items(self) -> list[tuple[str, list[HistoryEntry]]]:
        """All logs as ``(event, entries)`` pairs in first-recorded order."""
        with self._lock:
            return [(event, list(log)) for event, log in self._logs.items()]

    def clear(self, event: str | None = None) -> None:
        with self._lock:
            if event is None:
                self._logs.clear()
            else:
                self._logs.pop(event, None)

    def sizes(self) -> dict[str, int]:
        with self._lock:
            return {event: len(log) for event, log in self._logs.items()}

    def stats(self, event: str, listener_count: int) -> EventStats:
        entries = self.get(event)
        return EventStats(
            total_emissions=len(entries),
            last_emitted=entries[0].timestamp if entries else None,
            listener_count=listener_count,
            average_processing_time=average_processing_time(entries),
        )


def average_processing_time(entries: list[HistoryEntry]) -> float:
    """Mean processing time; entries without a recorded time count as 0."""
    if not entries:
        return 0.0
    return sum(entry.processing_time or 0.0 for entry in entries) / len(entries)
