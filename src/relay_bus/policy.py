"""
Execution policy: how a single listener invocation is run.

- Timeout: an awaitable result is wrapped in a task and raced against the
  timeout with ``asyncio.wait``. When the timeout wins, ``ExecutionTimeout``
  is raised and the task is detached, not cancelled: it keeps running and
  whatever it eventually produces is discarded. Plain synchronous callbacks
  run to completion inline and cannot be preempted.
- Retry: the (timeout-wrapped) invocation is attempted up to
  ``RetryConfig.max_retries`` times, sleeping ``retry_delay * k`` seconds
  after the k-th failure. When all attempts fail, ``RetryExhausted`` carries
  the last failure.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .errors import ExecutionFailure, ExecutionTimeout, InvalidArgument, RetryExhausted
from .telemetry import add_event_to_span, dispatch_span
from .validation import validate_int, validate_non_negative

if TYPE_CHECKING:
    from .listeners import Listener
    from .metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """
    Retry settings read when a retry-enabled invocation starts.

    Attributes:
        max_retries: Total attempts, including the first (>= 1)
        retry_delay: Base backoff in seconds; the k-th pause is k * retry_delay
    """

    max_retries: int = 3
    retry_delay: float = 1.0

    def merged(self, config: RetryConfig | Mapping[str, Any] | None = None, **overrides: Any) -> RetryConfig:
        """Return a copy with only the supplied fields replaced."""
        if isinstance(config, RetryConfig):
            present = {"max_retries": config.max_retries, "retry_delay": config.retry_delay}
        elif config is None:
            present = {}
        elif isinstance(config, Mapping):
            present = dict(config)
        else:
            raise InvalidArgument(
                f"retry config must be a RetryConfig or mapping, got {type(config).__name__}"
            )
        present.update(overrides)

        unknown = set(present) - {"max_retries", "retry_delay"}
        if unknown:
            raise InvalidArgument(f"Unknown retry option(s): {sorted(unknown)}")
        if "max_retries" in present:
            present["max_retries"] = validate_int(present["max_retries"], "max_retries", minimum=1)
        if "retry_delay" in present:
            present["retry_delay"] = validate_non_negative(present["retry_delay"], "retry_delay")

        return replace(self, **present)


class ExecutionPolicy:
    """Runs listener invocations with timeout and retry handling."""

    def __init__(self, metrics: MetricsCollector | None = None, tracing: bool = True):
        self._metrics = metrics
        self._tracing = tracing
        # Timed-out invocations that are still running
        self._detached: set[asyncio.Task[Any]] = set()

    async def invoke(self, listener: Listener, event: str, data: Any) -> Any:
        """
        Run one attempt of ``listener`` with ``data``.

        Raises:
            ExecutionTimeout: If the listener's timeout elapsed first
            ExecutionFailure: If the listener raised
        """
        handler_start = time.perf_counter()
        status = "success"
        timeout = listener.options.timeout

        with dispatch_span(
            "relay_bus.listener",
            {"event": event, "listener.id": listener.listener_id, "listener.name": listener.name},
            enabled=self._tracing,
        ):
            try:
                result = listener.bound_callback()(data)
                if inspect.isawaitable(result):
                    if timeout > 0:
                        result = await self._await_with_timeout(result, listener, event)
                    else:
                        result = await result
                return result
            except ExecutionTimeout:
                status = "timeout"
                raise
            except Exception as e:
                status = "error"
                raise ExecutionFailure(
                    f"Listener {listener.name} failed for event {event}: {e}",
                    event=event,
                    listener_name=listener.name,
                ) from e
            finally:
                if self._metrics:
                    self._metrics.record_listener_execution(
                        event, listener.name, time.perf_counter() - handler_start, status
                    )

    async def invoke_with_retry(
        self,
        listener: Listener,
        event: str,
        data: Any,
        config: RetryConfig,
    ) -> Any:
        """
        Run ``listener`` until it succeeds or ``config.max_retries`` attempts fail.

        Raises:
            RetryExhausted: With the last ``ExecutionFailure`` attached
        """
        attempts = 0
        while True:
            try:
                return await self.invoke(listener, event, data)
            except ExecutionFailure as e:
                attempts += 1
                if attempts >= config.max_retries:
                    raise RetryExhausted(e, attempts) from e

                delay = config.retry_delay * attempts
                logger.debug(
                    "Retrying listener",
                    extra={
                        "event": event,
                        "listener_id": listener.listener_id,
                        "listener_name": listener.name,
                        "attempt": attempts + 1,
                        "delay": delay,
                    },
                )
                add_event_to_span("relay_bus.retry", {"listener.name": listener.name, "attempt": attempts + 1})
                if self._metrics:
                    self._metrics.record_retry(event, listener.name)
                await asyncio.sleep(delay)

    async def _await_with_timeout(self, awaitable: Any, listener: Listener, event: str) -> Any:
        timeout = listener.options.timeout
        task = asyncio.ensure_future(awaitable)
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()

        self._detach(task, listener, event)
        raise ExecutionTimeout(
            f"Listener {listener.name} timed out after {timeout}s for event {event}",
            event=event,
            listener_name=listener.name,
            timeout=timeout,
        )

    def _detach(self, task: asyncio.Task[Any], listener: Listener, event: str) -> None:
        self._detached.add(task)
        task.add_done_callback(functools.partial(self._on_detached_done, listener, event))

    def _on_detached_done(self, listener: Listener, event: str, task: asyncio.Task[Any]) -> None:
        """Retrieve and discard the late outcome of a timed-out invocation."""
        self._detached.discard(task)
        if task.cancelled():
            return
        extra = {"event": event, "listener_id": listener.listener_id, "listener_name": listener.name}
        error = task.exception()
        if error is not None:
            logger.debug("Discarding late failure of timed-out listener", extra=extra, exc_info=error)
        else:
            logger.debug("Discarding late result of timed-out listener", extra=extra)

    @property
    def pending_count(self) -> int:
        """Number of detached invocations still running."""
        return len(self._detached)

    async def wait_for_pending(self, timeout: float = 30.0) -> int:
        """
        Wait for detached invocations to finish.

        Returns:
            Number of tasks that completed within ``timeout``
        """
        tasks = list(self._detached)
        if not tasks:
            return 0
        done, _ = await asyncio.wait(tasks, timeout=timeout)
        return len(done)

    def cancel_pending(self) -> int:
        """Cancel detached invocations that are still running."""
        cancelled = 0
        for task in list(self._detached):
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled
