"""
OpenTelemetry integration for the dispatcher.

Each processed event and each listener invocation runs inside a span when
OpenTelemetry is installed. Without it, every helper here is a no-op, so the
library works without OTEL as a required dependency.

Usage:
    from relay_bus.telemetry import dispatch_span, is_otel_available

    with dispatch_span("my_operation", {"event": "user.login"}):
        ...
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger(__name__)

# Try to import OpenTelemetry, but don't require it
try:
    from opentelemetry import trace
    from opentelemetry.trace import Status, StatusCode

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore
    Status = None  # type: ignore
    StatusCode = None  # type: ignore


def is_otel_available() -> bool:
    """Check if OpenTelemetry is available."""
    return OTEL_AVAILABLE


def get_tracer(name: str = "relay_bus") -> Any:
    """
    Get an OpenTelemetry tracer.

    Returns:
        Tracer instance if OTEL available, None otherwise
    """
    if not OTEL_AVAILABLE:
        return None
    return trace.get_tracer(name)


@contextlib.contextmanager
def dispatch_span(
    name: str,
    attributes: dict[str, Any] | None = None,
    enabled: bool = True,
) -> Iterator[Any]:
    """
    Run the enclosed block inside a span.

    The span is marked as errored and records the exception when the block
    raises; the exception is always re-raised. With ``enabled=False`` no span
    is created.

    Yields:
        The active span, or None when tracing is unavailable or disabled
    """
    if not OTEL_AVAILABLE or not enabled:
        yield None
        return

    tracer = get_tracer()
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise
        span.set_status(Status(StatusCode.OK))


def add_event_to_span(name: str, attributes: dict[str, Any] | None = None) -> None:
    """Add an event to the current span, if one is recording."""
    if not OTEL_AVAILABLE:
        return

    span = trace.get_current_span()
    if span and span.is_recording():
        span.add_event(name, attributes=attributes or {})
