"""
Middleware pipeline.

A middleware is ``middleware(event, data) -> data`` and may be a coroutine
function. Middlewares run in registration order, each receiving the output
of the previous one; the final value is what history stores and listeners
receive.
"""

from __future__ import annotations

import inspect
import threading
from collections.abc import Awaitable, Callable
from typing import Any

from .errors import MiddlewareError
from .validation import validate_callable

Middleware = Callable[[str, Any], Any] | Callable[[str, Any], Awaitable[Any]]


class MiddlewarePipeline:
    """Append-only, ordered list of payload transforms."""

    def __init__(self) -> None:
        self._middlewares: list[Middleware] = []
        self._lock = threading.Lock()

    def use(self, middleware: Middleware) -> None:
        validate_callable(middleware, "Middleware")
        with self._lock:
            self._middlewares.append(middleware)

    async def apply(self, event: str, data: Any) -> Any:
        """
        Fold ``data`` through every middleware.

        Raises:
            MiddlewareError: If any middleware raises; later middlewares
                are not run
        """
        with self._lock:
            middlewares = list(self._middlewares)

        for middleware in middlewares:
            try:
                result = middleware(event, data)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                name = getattr(middleware, "__name__", repr(middleware))
                raise MiddlewareError(
                    f"Middleware {name} failed for event {event}: {e}",
                    event=event,
                    middleware_name=name,
                ) from e
            data = result

        return data

    def __len__(self) -> int:
        with self._lock:
            return len(self._middlewares)
