"""
Queue item model for the dispatch queue.

A ``QueuedEvent`` is created by ``EventBus.emit`` after middleware has run
and the payload has been recorded in history. The drain loop consumes items
in FIFO order and settles each item's future with the aggregated listener
results.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .history import HistoryEntry


def _generate_event_id() -> str:
    """Generate a unique event ID with timestamp prefix for ordering."""
    return f"evt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass(slots=True)
class QueuedEvent:
    """
    One pending emission.

    Attributes:
        event: Event name
        data: Payload after middleware
        future: Settled with the result list (or an internal failure)
        options: Emit options supplied by the caller
        history_entry: Entry to annotate with the processing time
        timestamp: Unix timestamp when the emission was queued
        event_id: Unique identifier, used in log records
    """

    event: str
    data: Any
    future: asyncio.Future[list[Any]]
    options: Mapping[str, Any] = field(default_factory=dict)
    history_entry: HistoryEntry | None = None
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=_generate_event_id)

    def resolve(self, results: list[Any]) -> None:
        # The emitter may have been cancelled while waiting
        if not self.future.done():
            self.future.set_result(results)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)
