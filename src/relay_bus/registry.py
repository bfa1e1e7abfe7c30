"""
Subscription registry.

Listeners are stored arena-style: one ``dict`` of listener records keyed by
an integer handle, plus two indexes of handles, one by exact event name and
one by wildcard pattern. Each handle lives in exactly one index, chosen by
the listener's ``pattern`` option at subscribe time.
"""

from __future__ import annotations

import itertools
import threading
from typing import Any

from .listeners import Listener, ListenerCallback, ListenerOptions
from .patterns import matches


class SubscriptionRegistry:
    """Exact and wildcard listener indexes for one bus."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._listeners: dict[int, Listener] = {}
        self._exact: dict[str, list[int]] = {}
        self._wildcard: dict[str, list[int]] = {}

    def add(self, event: str, callback: ListenerCallback, options: ListenerOptions) -> Listener:
        """File a new listener under ``event`` and return it."""
        with self._lock:
            listener = Listener(
                listener_id=next(self._ids),
                event=event,
                callback=callback,
                options=options,
            )
            index = self._wildcard if options.pattern else self._exact
            index.setdefault(event, []).append(listener.listener_id)
            self._listeners[listener.listener_id] = listener
            return listener

    def remove(self, listener_id: int) -> bool:
        """
        Remove exactly one listener by handle.

        Returns:
            True if the listener was still registered
        """
        with self._lock:
            listener = self._listeners.pop(listener_id, None)
            if listener is None:
                return False
            index = self._wildcard if listener.options.pattern else self._exact
            self._discard_ids(index, listener.event, {listener_id})
            return True

    def remove_by_event(self, event: str, callback: Any = None) -> int:
        """
        Remove listeners registered under ``event``.

        With ``callback``, only listeners whose callback compares equal are
        removed; without it, the whole entry goes.

        Returns:
            Number of listeners removed
        """
        removed = 0
        with self._lock:
            for index in (self._exact, self._wildcard):
                ids = index.get(event)
                if not ids:
                    continue
                if callback is None:
                    doomed = set(ids)
                else:
                    doomed = {i for i in ids if self._listeners[i].callback == callback}
                for listener_id in doomed:
                    del self._listeners[listener_id]
                self._discard_ids(index, event, doomed)
                removed += len(doomed)
        return removed

    def clear_exact(self) -> int:
        """
        Drop every exact-name listener.

        Wildcard subscriptions are left in place.
        """
        with self._lock:
            count = 0
            for ids in self._exact.values():
                for listener_id in ids:
                    del self._listeners[listener_id]
                count += len(ids)
            self._exact.clear()
            return count

    def resolve(self, event: str) -> list[Listener]:
        """
        Listeners that should receive ``event``, in execution order.

        Exact listeners come first, then listeners of each matching pattern
        in pattern registration order; the result is stably sorted by
        priority, highest first.
        """
        with self._lock:
            ordered = list(self._exact.get(event, ()))
            for pattern, ids in self._wildcard.items():
                if matches(event, pattern):
                    ordered.extend(ids)

            seen: set[int] = set()
            listeners: list[Listener] = []
            for listener_id in ordered:
                if listener_id not in seen:
                    seen.add(listener_id)
                    listeners.append(self._listeners[listener_id])

        listeners.sort(key=lambda listener: listener.options.priority, reverse=True)
        return listeners

    def events(self) -> list[str]:
        with self._lock:
            return list(self._exact)

    def patterns(self) -> list[str]:
        with self._lock:
            return list(self._wildcard)

    def count(self, event: str) -> int:
        """Number of exact listeners for ``event``."""
        with self._lock:
            return len(self._exact.get(event, ()))

    def wildcard_count(self) -> int:
        with self._lock:
            return sum(len(ids) for ids in self._wildcard.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    @staticmethod
    def _discard_ids(index: dict[str, list[int]], key: str, doomed: set[int]) -> None:
        remaining = [i for i in index.get(key, ()) if i not in doomed]
        if remaining:
            index[key] = remaining
        else:
            index.pop(key, None)
