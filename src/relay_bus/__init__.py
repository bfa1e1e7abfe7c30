"""
Relay Bus - in-process publish/subscribe event dispatcher.

Producers emit named events with payloads; listeners registered by exact
name or wildcard pattern receive the middleware-transformed payload.

Features:
- Sync and async listeners with priority ordering
- Wildcard patterns where "*" matches exactly one dot-separated segment
- Serialized dispatch queue: events never interleave their listeners
- Per-listener timeout, linear-backoff retry, fan-out and once-only delivery
- Middleware pipeline for payload transformation and validation
- Bounded per-event history with statistics
- Error channel for failures that must not abort dispatch
- Optional metrics (Prometheus) and OpenTelemetry spans

Basic Usage:
    import asyncio
    from relay_bus import EventBus

    async def main():
        bus = EventBus()

        def on_login(data):
            return f"hello {data['user']}"

        bus.subscribe("user.login", on_login, priority=10)
        bus.subscribe("user.*", print, pattern=True)

        results = await bus.emit("user.login", {"user": "alice"})

    asyncio.run(main())

Waiting for an event:
    payload = await bus.wait_for("job.finished", timeout=5.0)
"""

from .bus import EventBus, Unsubscribe
from .errors import (
    DispatchError,
    ErrorChannel,
    ExecutionFailure,
    ExecutionTimeout,
    InvalidArgument,
    MiddlewareError,
    RetryExhausted,
    WaitTimeout,
)
from .events import QueuedEvent
from .history import EventStats, HistoryEntry, HistoryStore
from .listeners import Listener, ListenerOptions
from .metrics import (
    CallbackMetrics,
    InMemoryMetrics,
    MetricsBackend,
    MetricsCollector,
    NoopMetrics,
    is_prometheus_available,
)
from .middleware import MiddlewarePipeline
from .patterns import matches
from .policy import ExecutionPolicy, RetryConfig
from .registry import SubscriptionRegistry
from .telemetry import dispatch_span, is_otel_available

__version__ = "0.1.0"

__all__ = [
    # Core
    "EventBus",
    "Unsubscribe",
    "Listener",
    "ListenerOptions",
    "QueuedEvent",
    "SubscriptionRegistry",
    "MiddlewarePipeline",
    "matches",
    # Execution policy
    "ExecutionPolicy",
    "RetryConfig",
    # History
    "HistoryStore",
    "HistoryEntry",
    "EventStats",
    # Errors
    "DispatchError",
    "InvalidArgument",
    "ExecutionFailure",
    "ExecutionTimeout",
    "RetryExhausted",
    "MiddlewareError",
    "WaitTimeout",
    "ErrorChannel",
    # Metrics
    "MetricsBackend",
    "MetricsCollector",
    "NoopMetrics",
    "CallbackMetrics",
    "InMemoryMetrics",
    "is_prometheus_available",
    # Telemetry (OpenTelemetry integration)
    "dispatch_span",
    "is_otel_available",
]
