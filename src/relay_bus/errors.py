"""
Error taxonomy and error channel for the dispatcher.

Every failure the bus observes is represented by a ``DispatchError`` subclass.
Failures that must not abort dispatch (invalid arguments, middleware
rejections, inline listener failures) are also funneled through an
``ErrorChannel`` so that registered handlers see them.

Usage:
    from relay_bus import EventBus

    bus = EventBus()
    bus.on_error(lambda error: print(f"bus error: {error}"))
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], object]


class DispatchError(Exception):
    """Base class for all dispatcher errors."""


class InvalidArgument(DispatchError, ValueError):
    """Raised synchronously for bad subscribe/use/on_error/emit input."""


class ExecutionFailure(DispatchError):
    """
    A listener raised while handling an event.

    Attributes:
        event: Event name being dispatched
        listener_name: Name of the failing callback
    """

    def __init__(self, message: str, event: str | None = None, listener_name: str | None = None):
        self.event = event
        self.listener_name = listener_name
        super().__init__(message)


class ExecutionTimeout(ExecutionFailure, TimeoutError):
    """A listener did not settle within its timeout."""

    def __init__(
        self,
        message: str,
        event: str | None = None,
        listener_name: str | None = None,
        timeout: float = 0.0,
    ):
        self.timeout = timeout
        super().__init__(message, event=event, listener_name=listener_name)


class RetryExhausted(DispatchError):
    """Every retry attempt failed; ``last_error`` is the final failure."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Retries exhausted after {attempts} attempt(s): {last_error}")


class MiddlewareError(DispatchError):
    """A middleware raised; the emission was aborted."""

    def __init__(self, message: str, event: str, middleware_name: str):
        self.event = event
        self.middleware_name = middleware_name
        super().__init__(message)


class WaitTimeout(DispatchError, TimeoutError):
    """``wait_for`` expired before the event was emitted."""

    def __init__(self, event: str, timeout: float | None):
        self.event = event
        self.timeout = timeout
        super().__init__(f"Timeout waiting for event: {event}")


class ErrorChannel:
    """
    Fan-out of errors to registered handlers.

    Handlers are called synchronously in registration order. A handler that
    raises is logged and the remaining handlers still run.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug
        self._handlers: list[ErrorHandler] = []
        self._lock = threading.Lock()

    def add_handler(self, handler: ErrorHandler) -> None:
        if not callable(handler):
            raise InvalidArgument("Error handler must be callable")
        with self._lock:
            self._handlers.append(handler)

    def publish(self, error: BaseException) -> None:
        """Deliver ``error`` to every handler, logging it in debug mode."""
        with self._lock:
            handlers = list(self._handlers)

        for handler in handlers:
            try:
                handler(error)
            except Exception:  # nosec - one broken handler must not hide the error from others
                logger.exception(
                    "Error handler failed",
                    extra={"handler_name": getattr(handler, "__name__", repr(handler))},
                )

        if self.debug:
            logger.error("[EventBus Error] %s", error, exc_info=error)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
