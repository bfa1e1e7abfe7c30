#!/usr/bin/env python3
"""
Relay Bus Benchmarks

Run with: python benchmarks/benchmark_throughput.py

Measures:
- Emission throughput through the serialized dispatch queue
- Listener dispatch latency with several prioritized listeners
- Wildcard resolution overhead
- Cost of middleware, metrics and fan-out listeners
"""

import asyncio
import gc
import statistics
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from relay_bus import EventBus, InMemoryMetrics, MetricsCollector

TARGET_EVENTS_PER_SECOND = 10000


@dataclass
class BenchmarkResult:
    """Result of a benchmark run."""

    name: str
    iterations: int
    total_time: float
    events_per_second: float
    avg_latency_ms: float
    p50_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float


def percentile(data: list[float], p: float) -> float:
    """Calculate percentile."""
    if not data:
        return 0.0
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p / 100)
    return sorted_data[min(idx, len(sorted_data) - 1)]


async def run_emissions(
    name: str,
    bus: EventBus,
    num_events: int,
    event_name: Callable[[int], str] = lambda i: "benchmark.event",
) -> BenchmarkResult:
    """Emit ``num_events`` sequentially and time each emit round trip."""
    # Warm up
    for _ in range(100):
        await bus.emit("benchmark.warmup", {"i": 0})

    gc.collect()
    latencies: list[float] = []

    start = time.perf_counter()
    for i in range(num_events):
        emit_start = time.perf_counter()
        await bus.emit(event_name(i), {"i": i})
        latencies.append((time.perf_counter() - emit_start) * 1000)

    total_time = time.perf_counter() - start
    await bus.shutdown()

    return BenchmarkResult(
        name=name,
        iterations=num_events,
        total_time=total_time,
        events_per_second=num_events / total_time,
        avg_latency_ms=statistics.mean(latencies),
        p50_latency_ms=percentile(latencies, 50),
        p95_latency_ms=percentile(latencies, 95),
        p99_latency_ms=percentile(latencies, 99),
    )


async def benchmark_emit_throughput(num_events: int = 10000, with_listeners: bool = True) -> BenchmarkResult:
    """Benchmark raw emission throughput."""
    bus = EventBus(tracing=False)
    if with_listeners:
        bus.subscribe("benchmark.event", lambda data: None)
    return await run_emissions(f"emit_throughput(listeners={with_listeners})", bus, num_events)


async def benchmark_listener_dispatch(num_events: int = 5000, num_listeners: int = 5) -> BenchmarkResult:
    """Benchmark dispatch to several listeners of different priorities."""
    bus = EventBus(tracing=False)
    for i in range(num_listeners):
        bus.subscribe("benchmark.event", lambda data: None, priority=100 - i)
    return await run_emissions(f"listener_dispatch(listeners={num_listeners})", bus, num_events)


async def benchmark_pattern_matching(num_events: int = 5000) -> BenchmarkResult:
    """Benchmark wildcard resolution overhead."""
    bus = EventBus(tracing=False)

    def listener(data):
        pass

    for pattern in ("user.*", "chat.*", "system.*", "api.request.*", "*.login"):
        bus.subscribe(pattern, listener, pattern=True)

    event_names = [
        "user.login",
        "user.logout",
        "chat.message",
        "system.startup",
        "api.request.get",
        "other.event",
    ]
    return await run_emissions(
        "pattern_matching",
        bus,
        num_events,
        event_name=lambda i: event_names[i % len(event_names)],
    )


async def benchmark_with_middleware(num_events: int = 5000) -> BenchmarkResult:
    """Benchmark a two-step middleware pipeline."""
    bus = EventBus(tracing=False)
    bus.use(lambda event, data: {**data, "ts": time.time()})
    bus.use(lambda event, data: {**data, "validated": True})
    bus.subscribe("benchmark.event", lambda data: None)
    return await run_emissions("with_middleware", bus, num_events)


async def benchmark_with_metrics(num_events: int = 5000) -> BenchmarkResult:
    """Benchmark with in-memory metrics collection enabled."""
    bus = EventBus(metrics=MetricsCollector(InMemoryMetrics()), tracing=False)
    bus.subscribe("benchmark.event", lambda data: None)
    return await run_emissions("with_metrics", bus, num_events)


async def benchmark_fan_out(num_events: int = 5000, num_listeners: int = 5) -> BenchmarkResult:
    """Benchmark concurrent run_async listeners."""
    bus = EventBus(tracing=False)

    async def listener(data):
        return data

    for _ in range(num_listeners):
        bus.subscribe("benchmark.event", listener, run_async=True)
    return await run_emissions(f"fan_out(listeners={num_listeners})", bus, num_events)


def print_result(result: BenchmarkResult) -> None:
    """Print benchmark result."""
    status = "OK" if result.events_per_second >= TARGET_EVENTS_PER_SECOND else "SLOW"
    print(f"\n[{status}] {result.name}")
    print(f"   Events/sec: {result.events_per_second:,.0f}")
    print(f"   Total time: {result.total_time:.3f}s for {result.iterations:,} events")
    print(f"   Latency (ms): avg={result.avg_latency_ms:.3f}, "
          f"p50={result.p50_latency_ms:.3f}, "
          f"p95={result.p95_latency_ms:.3f}, "
          f"p99={result.p99_latency_ms:.3f}")


async def run_all() -> list[BenchmarkResult]:
    results: list[BenchmarkResult] = []

    print("\n--- Emission Throughput ---")
    for with_listeners in (False, True):
        results.append(await benchmark_emit_throughput(with_listeners=with_listeners))
        print_result(results[-1])

    print("\n--- Listener Dispatch ---")
    for num_listeners in (1, 5, 10):
        results.append(await benchmark_listener_dispatch(num_listeners=num_listeners))
        print_result(results[-1])

    print("\n--- Pattern Matching ---")
    results.append(await benchmark_pattern_matching())
    print_result(results[-1])

    print("\n--- With Features ---")
    for benchmark in (benchmark_with_middleware, benchmark_with_metrics, benchmark_fan_out):
        results.append(await benchmark())
        print_result(results[-1])

    return results


def main():
    """Run all benchmarks."""
    print("=" * 60)
    print("Relay Bus Benchmarks")
    print("=" * 60)
    print(f"Target: {TARGET_EVENTS_PER_SECOND:,} events/sec")

    results = asyncio.run(run_all())

    print("\n" + "=" * 60)
    print("Summary")
    print("=" * 60)

    passing = sum(1 for r in results if r.events_per_second >= TARGET_EVENTS_PER_SECOND)
    total = len(results)
    print(f"\nPassing target: {passing}/{total}")

    if passing == total:
        print("\nAll benchmarks meet the target")
        return 0
    print(f"\n{total - passing} benchmarks below target")
    return 1


if __name__ == "__main__":
    sys.exit(main())
