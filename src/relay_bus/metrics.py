"""
Metrics collection for the dispatcher.

Provides hooks for emitting metrics about emissions, listener executions,
retries and queue depth. Supports callback-based, in-memory and (when
``prometheus_client`` is installed) Prometheus backends.

Usage:
    from relay_bus import EventBus
    from relay_bus.metrics import InMemoryMetrics, MetricsCollector

    backend = InMemoryMetrics()
    bus = EventBus(metrics=MetricsCollector(backend))

    # Or with Prometheus (if prometheus_client installed)
    from relay_bus.metrics import PrometheusMetrics
    bus = EventBus(metrics=MetricsCollector(PrometheusMetrics()))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class MetricTags:
    """Common tags for metrics."""

    event: str | None = None
    listener: str | None = None
    status: str | None = None  # "success", "error", "timeout"

    def to_dict(self) -> dict[str, str]:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in vars(self).items() if v is not None}


class MetricsBackend(ABC):
    """Abstract base class for metrics backends."""

    @abstractmethod
    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        """Increment a counter."""

    @abstractmethod
    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        """Set a gauge value."""

    @abstractmethod
    def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
        """Record a timing in milliseconds."""


class NoopMetrics(MetricsBackend):
    """No-op metrics backend (default when metrics disabled)."""

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        pass

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        pass

    def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
        pass


class CallbackMetrics(MetricsBackend):
    """
    Callback-based metrics backend.

    The callback receives ``(metric_type, name, value, tags)`` where
    ``metric_type`` is "counter", "gauge" or "timing".
    """

    def __init__(self, callback: Callable[[str, str, float, dict[str, str] | None], None]):
        self.callback = callback

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        self.callback("counter", name, float(value), tags)

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self.callback("gauge", name, value, tags)

    def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
        self.callback("timing", name, value_ms, tags)


@dataclass
class InMemoryMetrics(MetricsBackend):
    """In-memory metrics backend for testing and debugging."""

    counters: dict[str, int] = field(default_factory=dict)
    gauges: dict[str, float] = field(default_factory=dict)
    timings: dict[str, list[float]] = field(default_factory=dict)

    def _key(self, name: str, tags: dict[str, str] | None) -> str:
        if not tags:
            return name
        tag_str = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}{{{tag_str}}}"

    def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
        key = self._key(name, tags)
        self.counters[key] = self.counters.get(key, 0) + value

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        self.gauges[self._key(name, tags)] = value

    def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
        self.timings.setdefault(self._key(name, tags), []).append(value_ms)

    def reset(self) -> None:
        self.counters.clear()
        self.gauges.clear()
        self.timings.clear()

    def get_counter(self, name: str, tags: dict[str, str] | None = None) -> int:
        return self.counters.get(self._key(name, tags), 0)

    def get_gauge(self, name: str, tags: dict[str, str] | None = None) -> float | None:
        return self.gauges.get(self._key(name, tags))

    def get_timing_values(self, name: str, tags: dict[str, str] | None = None) -> list[float]:
        return self.timings.get(self._key(name, tags), [])

    def sum_counter(self, name: str) -> int:
        """Total of a counter across every tag combination."""
        return sum(
            value
            for key, value in self.counters.items()
            if key == name or key.startswith(name + "{")
        )


class MetricsCollector:
    """
    Named dispatcher metrics on top of a backend.
    """

    EVENTS_EMITTED = "events_emitted_total"
    EVENTS_FAILED = "events_failed_total"
    LISTENER_EXECUTIONS = "listener_executions_total"
    LISTENER_LATENCY = "listener_latency_ms"
    LISTENER_RETRIES = "listener_retries_total"
    QUEUE_DEPTH = "queue_depth"

    def __init__(self, backend: MetricsBackend | None = None, prefix: str = "relay_bus"):
        self.backend = backend or NoopMetrics()
        self.prefix = prefix

    def _name(self, metric: str) -> str:
        return f"{self.prefix}_{metric}" if self.prefix else metric

    def record_event_emitted(self, event: str) -> None:
        tags = MetricTags(event=event).to_dict()
        self.backend.increment(self._name(self.EVENTS_EMITTED), tags=tags)

    def record_event_failed(self, event: str) -> None:
        """An emission rejected before it reached the queue."""
        tags = MetricTags(event=event).to_dict()
        self.backend.increment(self._name(self.EVENTS_FAILED), tags=tags)

    def record_listener_execution(
        self,
        event: str,
        listener_name: str,
        latency_seconds: float,
        status: str = "success",
    ) -> None:
        tags = MetricTags(event=event, listener=listener_name, status=status).to_dict()
        self.backend.increment(self._name(self.LISTENER_EXECUTIONS), tags=tags)
        self.backend.timing(self._name(self.LISTENER_LATENCY), latency_seconds * 1000, tags=tags)

    def record_retry(self, event: str, listener_name: str) -> None:
        tags = MetricTags(event=event, listener=listener_name).to_dict()
        self.backend.increment(self._name(self.LISTENER_RETRIES), tags=tags)

    def update_queue_depth(self, depth: int) -> None:
        self.backend.gauge(self._name(self.QUEUE_DEPTH), float(depth))

    def get_snapshot(self) -> dict[str, Any]:
        """
        Summarise collected metrics.

        Only an ``InMemoryMetrics`` backend can be summarised; other backends
        report their type name.
        """
        if not isinstance(self.backend, InMemoryMetrics):
            return {"backend": type(self.backend).__name__}

        backend = self.backend
        events_emitted: dict[str, int] = {}
        listener_stats: dict[str, dict[str, int]] = {}

        emitted_prefix = self._name(self.EVENTS_EMITTED)
        executions_prefix = self._name(self.LISTENER_EXECUTIONS)

        for key, value in backend.counters.items():
            if key.startswith(emitted_prefix):
                event = _extract_tag(key, "event")
                if event:
                    events_emitted[event] = events_emitted.get(event, 0) + value
            elif key.startswith(executions_prefix):
                listener = _extract_tag(key, "listener")
                status = _extract_tag(key, "status") or "success"
                if listener:
                    stats = listener_stats.setdefault(
                        listener, {"total_calls": 0, "success": 0, "error": 0, "timeout": 0}
                    )
                    stats["total_calls"] += value
                    stats[status] = stats.get(status, 0) + value

        return {
            "events_emitted": events_emitted,
            "total_events_emitted": sum(events_emitted.values()),
            "total_events_failed": backend.sum_counter(self._name(self.EVENTS_FAILED)),
            "total_retries": backend.sum_counter(self._name(self.LISTENER_RETRIES)),
            "queue_depth": backend.get_gauge(self._name(self.QUEUE_DEPTH)),
            "listener_stats": listener_stats,
        }


def _extract_tag(key: str, tag_name: str) -> str | None:
    """Extract a tag value from an in-memory metric key."""
    # Keys look like: prefix_metric{tag1=val1,tag2=val2}
    if "{" not in key:
        return None
    tag_part = key.split("{", 1)[1].rstrip("}")
    for pair in tag_part.split(","):
        if "=" in pair:
            name, value = pair.split("=", 1)
            if name == tag_name:
                return value
    return None


# Optional Prometheus integration
try:
    from prometheus_client import Counter, Gauge, Histogram

    class PrometheusMetrics(MetricsBackend):
        """
        Prometheus metrics backend.

        Requires prometheus_client to be installed. Pass a dedicated
        ``registry`` to avoid clashing with the process-wide default one.
        """

        def __init__(self, prefix: str = "relay_bus", registry: Any = None):
            self.prefix = prefix
            self.registry = registry
            self._counters: dict[str, Counter] = {}
            self._gauges: dict[str, Gauge] = {}
            self._histograms: dict[str, Histogram] = {}

        def _registry_kwargs(self) -> dict[str, Any]:
            return {"registry": self.registry} if self.registry is not None else {}

        def _get_counter(self, name: str, labels: list[str]) -> Counter:
            if name not in self._counters:
                self._counters[name] = Counter(
                    name, f"{name} counter", labels, **self._registry_kwargs()
                )
            return self._counters[name]

        def _get_gauge(self, name: str, labels: list[str]) -> Gauge:
            if name not in self._gauges:
                self._gauges[name] = Gauge(name, f"{name} gauge", labels, **self._registry_kwargs())
            return self._gauges[name]

        def _get_histogram(self, name: str, labels: list[str]) -> Histogram:
            if name not in self._histograms:
                self._histograms[name] = Histogram(
                    name, f"{name} histogram", labels, **self._registry_kwargs()
                )
            return self._histograms[name]

        def increment(self, name: str, value: int = 1, tags: dict[str, str] | None = None) -> None:
            counter = self._get_counter(name, sorted(tags) if tags else [])
            if tags:
                counter.labels(**tags).inc(value)
            else:
                counter.inc(value)

        def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
            gauge = self._get_gauge(name, sorted(tags) if tags else [])
            if tags:
                gauge.labels(**tags).set(value)
            else:
                gauge.set(value)

        def timing(self, name: str, value_ms: float, tags: dict[str, str] | None = None) -> None:
            # Prometheus convention is seconds
            hist = self._get_histogram(name, sorted(tags) if tags else [])
            if tags:
                hist.labels(**tags).observe(value_ms / 1000)
            else:
                hist.observe(value_ms / 1000)

    PROMETHEUS_AVAILABLE = True
except ImportError:
    PROMETHEUS_AVAILABLE = False
    PrometheusMetrics = None  # type: ignore


def is_prometheus_available() -> bool:
    """Check if Prometheus client is available."""
    return PROMETHEUS_AVAILABLE
