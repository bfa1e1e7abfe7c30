"""
Event Bus - in-process publish/subscribe dispatcher.

This module provides:
- Subscription by exact event name or wildcard pattern ("user.*")
- A middleware pipeline that transforms payloads before delivery
- A serialized dispatch queue: one event is fully processed before the next
- Priority ordering, timeouts, retries and once-only listeners
- Bounded per-event history and statistics
- An error channel for failures that do not abort dispatch

Usage:
    from relay_bus import EventBus

    bus = EventBus()

    def on_login(data):
        return f"welcome {data['user']}"

    bus.subscribe("user.login", on_login, priority=10)
    bus.subscribe("user.*", audit, pattern=True, run_async=True)

    results = await bus.emit("user.login", {"user": "alice"})
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Coroutine, Mapping
from typing import TYPE_CHECKING, Any

from .errors import (
    ErrorChannel,
    ErrorHandler,
    ExecutionFailure,
    InvalidArgument,
    MiddlewareError,
    WaitTimeout,
)
from .events import QueuedEvent
from .history import DEFAULT_MAX_HISTORY_SIZE, EventStats, HistoryEntry, HistoryStore
from .listeners import ListenerCallback, ListenerOptions
from .middleware import Middleware, MiddlewarePipeline
from .policy import ExecutionPolicy, RetryConfig
from .registry import SubscriptionRegistry
from .telemetry import dispatch_span
from .validation import validate_callable, validate_event_name, validate_int, validate_non_negative

if TYPE_CHECKING:
    from .metrics import MetricsCollector

logger = logging.getLogger(__name__)

# Returned by subscribe(); removes exactly that subscription
Unsubscribe = Callable[[], bool]


class EventBus:
    """
    In-process event dispatcher.

    Every bus owns its own registry, middleware, history, queue and error
    handlers, so independent buses can coexist in one process.

    Emission flow:
        emit -> middleware -> history -> queue -> drain loop -> listeners

    Within one event, listeners run in priority order (highest first).
    Listeners without ``run_async``/``retry`` are awaited one at a time and
    their failures are reported to the error channel. ``run_async`` and
    ``retry`` listeners are started in priority order and awaited together
    after the inline pass; their failures become entries of the result list.
    """

    def __init__(
        self,
        max_history_size: int = DEFAULT_MAX_HISTORY_SIZE,
        debug: bool = False,
        retry_config: RetryConfig | Mapping[str, Any] | None = None,
        metrics: MetricsCollector | None = None,
        tracing: bool = True,
    ):
        """
        Initialize the Event Bus.

        Args:
            max_history_size: Entries kept per event name (oldest evicted)
            debug: Log bus activity and every funneled error
            retry_config: Initial retry settings (defaults: 3 attempts, 1s delay)
            metrics: Optional MetricsCollector for observability
            tracing: Create OpenTelemetry spans when OpenTelemetry is installed
        """
        self.max_history_size = validate_int(max_history_size, "max_history_size", minimum=1)
        self._debug = bool(debug)
        self._retry_config = RetryConfig().merged(retry_config)
        self._metrics = metrics
        self._tracing = tracing

        self._registry = SubscriptionRegistry()
        self._middleware = MiddlewarePipeline()
        self._history = HistoryStore(max_size=self.max_history_size)
        self._errors = ErrorChannel(debug=self._debug)
        self._policy = ExecutionPolicy(metrics=metrics, tracing=tracing)

        # Dispatch queue, drained by at most one task at a time
        self._queue: deque[QueuedEvent] = deque()
        self._processing = False
        self._drain_task: asyncio.Task[None] | None = None

        # Fan-out listener tasks of the event being processed
        self._pending_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        event: str,
        callback: ListenerCallback,
        options: ListenerOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> Unsubscribe:
        """
        Subscribe to an event name, or to a wildcard pattern with ``pattern=True``.

        Args:
            event: Event name, or pattern such as "user.*"
            callback: Sync or async function called with the payload
            options: ListenerOptions or mapping of option names
            **overrides: Individual options (once, priority, run_async,
                pattern, timeout, retry, context)

        Returns:
            Callable removing exactly this subscription

        Raises:
            InvalidArgument: If the name, callback or options are invalid

        Example:
            unsubscribe = bus.subscribe("chat.*", on_chat, pattern=True, priority=5)
            ...
            unsubscribe()
        """
        try:
            validate_event_name(event)
            validate_callable(callback, "callback")
            listener_options = ListenerOptions.build(options, **overrides)
        except InvalidArgument as e:
            self._handle_error(e)
            raise

        listener = self._registry.add(event, callback, listener_options)
        self._log(
            f"Subscribed to event: {event}",
            event=event,
            listener_id=listener.listener_id,
            pattern=listener_options.pattern,
        )

        def unsubscribe() -> bool:
            return self._registry.remove(listener.listener_id)

        return unsubscribe

    def once(self, event: str, callback: ListenerCallback) -> Unsubscribe:
        """Subscribe a listener that is removed after its first successful dispatch."""
        return self.subscribe(event, callback, once=True)

    def unsubscribe(self, event: str, callback: ListenerCallback | None = None) -> int:
        """
        Unsubscribe listeners registered under ``event``.

        With ``callback``, every listener under ``event`` whose callback
        matches is removed. Without it, all listeners under ``event`` are.

        Returns:
            Number of listeners removed
        """
        try:
            validate_event_name(event)
            if callback is not None:
                validate_callable(callback, "callback")
        except InvalidArgument as e:
            self._handle_error(e)
            raise

        removed = self._registry.remove_by_event(event, callback)
        self._log(f"Unsubscribed from event: {event}", event=event, removed=removed)
        return removed

    def remove_all_listeners(self) -> None:
        """
        Remove every exact-name listener.

        Wildcard subscriptions are intentionally kept; remove those through
        their unsubscribe callables or ``unsubscribe(pattern)``.
        """
        removed = self._registry.clear_exact()
        self._log("All listeners removed", removed=removed)

    def get_events(self) -> list[str]:
        """Event names with exact listeners (wildcard patterns excluded)."""
        return self._registry.events()

    def get_patterns(self) -> list[str]:
        """Wildcard patterns with listeners."""
        return self._registry.patterns()

    def has_listeners(self, event: str) -> bool:
        return self._registry.count(event) > 0

    def get_listener_count(self, event: str) -> int:
        """Number of exact listeners for ``event``."""
        return self._registry.count(event)

    # ------------------------------------------------------------------
    # Middleware, errors and configuration
    # ------------------------------------------------------------------

    def use(self, middleware: Middleware) -> None:
        """Append ``middleware(event, data) -> data`` to the pipeline."""
        try:
            self._middleware.use(middleware)
        except InvalidArgument as e:
            self._handle_error(e)
            raise

    def on_error(self, handler: ErrorHandler) -> None:
        """Register ``handler(error)`` on the error channel."""
        try:
            self._errors.add_handler(handler)
        except InvalidArgument as e:
            self._handle_error(e)
            raise

    def set_debug(self, enabled: bool) -> None:
        """
        Toggle debug logging. Dispatch behavior is unaffected.

        Bus activity is logged at DEBUG level on the ``relay_bus`` loggers, so
        it only shows up when the application enables DEBUG for them, e.g.
        ``logging.getLogger("relay_bus").setLevel(logging.DEBUG)``. Funneled
        errors are logged at ERROR level.
        """
        self._debug = bool(enabled)
        self._errors.debug = self._debug

    @property
    def debug(self) -> bool:
        return self._debug

    def set_retry_config(
        self,
        config: RetryConfig | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> RetryConfig:
        """
        Merge new retry settings over the current ones.

        Only retry invocations that start afterwards see the new settings.

        Returns:
            The resulting RetryConfig
        """
        try:
            self._retry_config = self._retry_config.merged(config, **overrides)
        except InvalidArgument as e:
            self._handle_error(e)
            raise
        return self._retry_config

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    async def emit(
        self,
        event: str,
        data: Any = None,
        options: Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """
        Emit an event and wait for it to be dispatched.

        The payload passes through middleware and is recorded in history
        before it is queued. Events are processed strictly in emission order.

        The queue is not reentrant: a listener that awaits ``emit`` while its
        own event is being processed waits forever, because the new item is
        queued behind that event. Listeners should schedule follow-up
        emissions (for example with ``asyncio.ensure_future``) instead.

        Args:
            event: Event name
            data: Payload
            options: Emit options, kept on the queued item

        Returns:
            Inline listener results in priority order, followed by the
            outcome of each fan-out listener (value or exception object)

        Raises:
            InvalidArgument: If ``event`` is not a non-empty string
            MiddlewareError: If a middleware failed (nothing is recorded)
        """
        try:
            validate_event_name(event)
        except InvalidArgument as e:
            self._handle_error(e)
            raise

        self._log(f"Emitting event: {event}", event=event)

        try:
            data = await self._middleware.apply(event, data)
        except MiddlewareError as e:
            if self._metrics:
                self._metrics.record_event_failed(event)
            self._handle_error(e)
            raise

        entry = self._history.record(event, data)
        item = QueuedEvent(
            event=event,
            data=data,
            future=asyncio.get_running_loop().create_future(),
            options=dict(options or {}),
            history_entry=entry,
        )
        self._queue.append(item)

        if self._metrics:
            self._metrics.record_event_emitted(event)
            self._metrics.update_queue_depth(len(self._queue))

        self._start_drain()
        return await item.future

    async def emit_later(self, event: str, data: Any = None, delay: float = 0.0) -> list[Any]:
        """Wait ``delay`` seconds, then emit."""
        try:
            delay = validate_non_negative(delay, "delay")
        except InvalidArgument as e:
            self._handle_error(e)
            raise

        await asyncio.sleep(delay)
        return await self.emit(event, data)

    async def wait_for(self, event: str, timeout: float | None = 5.0) -> Any:
        """
        Wait for the next emission of ``event`` and return its payload.

        Args:
            event: Event name to wait for
            timeout: Seconds to wait; None or 0 waits indefinitely

        Raises:
            WaitTimeout: If the event was not emitted in time
        """
        if timeout:
            try:
                timeout = validate_non_negative(timeout, "timeout")
            except InvalidArgument as e:
                self._handle_error(e)
                raise

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def _resolve(data: Any) -> None:
            if not future.done():
                future.set_result(data)

        unsubscribe = self.once(event, _resolve)
        try:
            if not timeout:
                return await future
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise WaitTimeout(event, timeout) from None
        finally:
            unsubscribe()

    def _start_drain(self) -> None:
        if self._processing:
            return
        self._processing = True
        self._drain_task = asyncio.get_running_loop().create_task(self._process_queue())

    async def _process_queue(self) -> None:
        """Drain the queue, fully processing one event before the next."""
        try:
            while self._queue:
                item = self._queue.popleft()
                if self._metrics:
                    self._metrics.update_queue_depth(len(self._queue))

                started = time.perf_counter()
                try:
                    results = await self._process_event(item)
                except asyncio.CancelledError:
                    item.future.cancel()
                    while self._queue:
                        self._queue.popleft().future.cancel()
                    raise
                except Exception as e:  # nosec - surfaced to the emitter through its future
                    logger.exception(
                        "Event processing failed",
                        extra={"event": item.event, "event_id": item.event_id},
                    )
                    item.reject(e)
                else:
                    item.resolve(results)
                finally:
                    if item.history_entry is not None:
                        item.history_entry.processing_time = time.perf_counter() - started
        finally:
            self._processing = False
            self._drain_task = None

    async def _process_event(self, item: QueuedEvent) -> list[Any]:
        """Run every listener resolved for ``item`` and aggregate their results."""
        event, data = item.event, item.data
        listeners = self._registry.resolve(event)
        if not listeners:
            return []

        results: list[Any] = []
        fan_out: list[asyncio.Task[Any]] = []

        with dispatch_span(
            "relay_bus.dispatch",
            {"event": event, "event_id": item.event_id, "listener_count": len(listeners)},
            enabled=self._tracing,
        ):
            for listener in listeners:
                try:
                    if listener.options.retry:
                        fan_out.append(
                            self._schedule(
                                self._policy.invoke_with_retry(
                                    listener, event, data, self._retry_config
                                )
                            )
                        )
                    elif listener.options.run_async:
                        fan_out.append(self._schedule(self._policy.invoke(listener, event, data)))
                    else:
                        results.append(await self._policy.invoke(listener, event, data))
                except ExecutionFailure as e:
                    # Inline failures are isolated; the next listener still runs
                    self._handle_error(e)
                    continue

                if listener.options.once:
                    self._registry.remove(listener.listener_id)

            if fan_out:
                results.extend(await asyncio.gather(*fan_out, return_exceptions=True))

        return results

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._track_task(task)
        return task

    def _track_task(self, task: asyncio.Task[Any]) -> None:
        """Track a fan-out task for lifecycle management."""
        self._pending_tasks.add(task)
        task.add_done_callback(self._untrack_task)

    def _untrack_task(self, task: asyncio.Task[Any]) -> None:
        self._pending_tasks.discard(task)

    # ------------------------------------------------------------------
    # History and statistics
    # ------------------------------------------------------------------

    def get_history(
        self, event: str | None = None
    ) -> list[HistoryEntry] | list[tuple[str, list[HistoryEntry]]]:
        """
        Recorded emissions, newest first.

        Returns:
            Entries for ``event``, or ``(event, entries)`` pairs for every
            event when no name is given
        """
        if event is None:
            return self._history.items()
        return self._history.get(event)

    def clear_history(self, event: str | None = None) -> None:
        self._history.clear(event)

    def get_event_stats(self, event: str) -> EventStats:
        """Emission count, last emission time, listener count and mean processing time."""
        return self._history.stats(event, self._registry.count(event))

    def get_stats(self) -> dict[str, Any]:
        """
        Get event bus statistics.

        Returns:
            Dictionary with listener counts, queue state, configuration,
            history sizes and metrics
        """
        stats: dict[str, Any] = {
            "exact_listeners": len(self._registry) - self._registry.wildcard_count(),
            "wildcard_listeners": self._registry.wildcard_count(),
            "events": self._registry.events(),
            "patterns": self._registry.patterns(),
            "queued_events": len(self._queue),
            "processing": self._processing,
            "pending_async_tasks": len(self._pending_tasks),
            "detached_tasks": self._policy.pending_count,
            "middleware_count": len(self._middleware),
            "error_handler_count": len(self._errors),
            "debug": self._debug,
            "retry_config": {
                "max_retries": self._retry_config.max_retries,
                "retry_delay": self._retry_config.retry_delay,
            },
            "max_history_size": self.max_history_size,
            "history_sizes": self._history.sizes(),
            "metrics_enabled": self._metrics is not None,
        }

        if self._metrics:
            stats["metrics"] = self._metrics.get_snapshot()

        return stats

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_for_pending(self, timeout: float = 30.0) -> int:
        """
        Wait for timed-out listener invocations that are still running.

        Returns:
            Number of tasks that completed
        """
        return await self._policy.wait_for_pending(timeout)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Let the queue drain, then cancel timed-out invocations still running.

        Args:
            timeout: Maximum time to wait for the queue to drain
        """
        drain_task = self._drain_task
        if drain_task is not None and not drain_task.done():
            _, pending = await asyncio.wait({drain_task}, timeout=timeout)
            if pending:
                logger.warning(
                    "Dispatch queue did not drain before shutdown timeout",
                    extra={"queued_events": len(self._queue), "timeout": timeout},
                )
                drain_task.cancel()

        cancelled = self._policy.cancel_pending()
        self._log("Event bus shut down", cancelled_tasks=cancelled)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _handle_error(self, error: BaseException) -> None:
        self._errors.publish(error)

    def _log(self, message: str, **extra: Any) -> None:
        if self._debug:
            logger.debug("[EventBus] %s", message, extra=extra)
