"""
Listener data models.

A ``Listener`` is a registered callback plus the ``ListenerOptions`` that
control how the dispatcher invokes it. Both are immutable once created.

Options are built from explicit defaults and overlaid with only the fields
the caller supplied:

    ListenerOptions.build({"priority": 5}, timeout=0.5)
    # ListenerOptions(once=False, priority=5, run_async=False, pattern=False,
    #                 timeout=0.5, retry=False, context=None)
"""

from __future__ import annotations

import inspect
import types
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

from .errors import InvalidArgument
from .validation import validate_int, validate_non_negative

# Listener callbacks may be plain functions or coroutine functions
ListenerCallback = Callable[[Any], Any] | Callable[[Any], Awaitable[Any]]

# "async" is a keyword in Python, accept it as a mapping key anyway
_OPTION_ALIASES = {"async": "run_async"}
_BOOL_OPTIONS = ("once", "run_async", "pattern", "retry")


@dataclass(frozen=True, slots=True)
class ListenerOptions:
    """
    Execution options for a listener.

    Attributes:
        once: Remove the listener after its first successful dispatch
        priority: Higher number runs first
        run_async: Schedule without awaiting inline (fan-out)
        pattern: Treat the subscribed name as a wildcard pattern
        timeout: Seconds to wait for the listener (0 = no timeout)
        retry: Re-invoke on failure using the bus retry config (fan-out)
        context: Object the callback is bound to, or None
    """

    once: bool = False
    priority: int = 0
    run_async: bool = False
    pattern: bool = False
    timeout: float = 0.0
    retry: bool = False
    context: Any = None

    @classmethod
    def build(
        cls,
        options: ListenerOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> ListenerOptions:
        """
        Create options from defaults, a base options value and overrides.

        Only fields that are present in ``options`` (when a mapping) or in
        ``overrides`` replace the defaults.

        Raises:
            InvalidArgument: On unknown option names or invalid values
        """
        if isinstance(options, ListenerOptions):
            base = options
            present: dict[str, Any] = {}
        elif options is None:
            base = cls()
            present = {}
        elif isinstance(options, Mapping):
            base = cls()
            present = dict(options)
        else:
            raise InvalidArgument(
                f"options must be a ListenerOptions or mapping, got {type(options).__name__}"
            )

        present.update(overrides)
        if not present:
            return base

        normalized = {_OPTION_ALIASES.get(key, key): value for key, value in present.items()}
        known = {f.name for f in fields(cls)}
        unknown = set(normalized) - known
        if unknown:
            raise InvalidArgument(f"Unknown listener option(s): {sorted(unknown)}")

        for name in _BOOL_OPTIONS:
            if name in normalized:
                normalized[name] = bool(normalized[name])
        if "priority" in normalized:
            normalized["priority"] = validate_int(normalized["priority"], "priority")
        if "timeout" in normalized:
            normalized["timeout"] = validate_non_negative(normalized["timeout"] or 0, "timeout")

        return replace(base, **normalized)


@dataclass(frozen=True, slots=True)
class Listener:
    """
    A registered callback.

    Attributes:
        listener_id: Registry handle, unique per bus
        event: Exact event name or wildcard pattern it was registered under
        callback: Function invoked with the event payload
        options: Execution options
    """

    listener_id: int
    event: str
    callback: ListenerCallback
    options: ListenerOptions = field(default_factory=ListenerOptions)

    @property
    def name(self) -> str:
        return getattr(self.callback, "__name__", None) or repr(self.callback)

    def bound_callback(self) -> Callable[[Any], Any]:
        """
        Return the callback, bound as a method of ``context`` when one is set.

        Only plain functions are bound; bound methods, builtins and callable
        objects keep their own receiver.
        """
        if self.options.context is None or not inspect.isfunction(self.callback):
            return self.callback
        return types.MethodType(self.callback, self.options.context)
