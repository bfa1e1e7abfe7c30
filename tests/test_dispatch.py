"""
Dispatch queue and listener execution tests.

Covers:
1. Priority ordering of inline listeners
2. Wildcard delivery
3. Serialized, FIFO queue processing
4. Fan-out (run_async) listeners and result aggregation
5. Listener error isolation
6. once / wait_for / emit_later
7. Context binding
"""

from __future__ import annotations

import asyncio

import pytest

from relay_bus import EventBus, ExecutionFailure, InvalidArgument, WaitTimeout


class TestPriorityOrdering:
    """Higher priority listeners run first."""

    @pytest.mark.asyncio
    async def test_higher_priority_result_first(self, event_bus):
        event_bus.subscribe("order.created", lambda data: "low", priority=1)
        event_bus.subscribe("order.created", lambda data: "high", priority=5)

        results = await event_bus.emit("order.created", {"id": 1})

        assert results == ["high", "low"]

    @pytest.mark.asyncio
    async def test_equal_priority_keeps_subscription_order(self, event_bus):
        for name in ("first", "second", "third"):
            event_bus.subscribe("order.created", lambda data, name=name: name)

        assert await event_bus.emit("order.created") == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_negative_priority_runs_last(self, event_bus):
        event_bus.subscribe("order.created", lambda data: "late", priority=-10)
        event_bus.subscribe("order.created", lambda data: "default")

        assert await event_bus.emit("order.created") == ["default", "late"]

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited_inline(self, event_bus):
        order = []

        async def slow(data):
            await asyncio.sleep(0.02)
            order.append("slow")
            return "slow"

        def fast(data):
            order.append("fast")
            return "fast"

        event_bus.subscribe("job.run", slow, priority=2)
        event_bus.subscribe("job.run", fast, priority=1)

        assert await event_bus.emit("job.run") == ["slow", "fast"]
        assert order == ["slow", "fast"]


class TestWildcardDelivery:
    """Pattern listeners receive matching events."""

    @pytest.mark.asyncio
    async def test_pattern_listener_receives_matching_events(self, event_bus):
        received = []
        event_bus.subscribe("user.*", lambda data: received.append(data), pattern=True)

        await event_bus.emit("user.login", "a")
        await event_bus.emit("user.logout", "b")
        await event_bus.emit("user.login.success", "c")
        await event_bus.emit("order.created", "d")

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_exact_and_pattern_listeners_merge_by_priority(self, event_bus):
        event_bus.subscribe("user.login", lambda data: "exact", priority=1)
        event_bus.subscribe("user.*", lambda data: "wildcard", pattern=True, priority=2)
        event_bus.subscribe("*.login", lambda data: "suffix", pattern=True)

        assert await event_bus.emit("user.login") == ["wildcard", "exact", "suffix"]

    @pytest.mark.asyncio
    async def test_no_listeners_returns_empty_list(self, event_bus):
        assert await event_bus.emit("nobody.listens", {"x": 1}) == []

    @pytest.mark.asyncio
    async def test_pattern_name_without_pattern_flag_is_exact(self, event_bus):
        event_bus.subscribe("user.*", lambda data: "literal")

        assert await event_bus.emit("user.login") == []
        assert await event_bus.emit("user.*") == ["literal"]


class TestDispatchQueue:
    """Events are processed one at a time in emission order."""

    @pytest.mark.asyncio
    async def test_events_never_interleave(self, event_bus):
        trace = []

        async def slow_listener(data):
            trace.append(f"{data}-start")
            await asyncio.sleep(0.02)
            trace.append(f"{data}-end")

        def fast_listener(data):
            trace.append(data)

        event_bus.subscribe("job.slow", slow_listener)
        event_bus.subscribe("job.fast", fast_listener)

        await asyncio.gather(
            event_bus.emit("job.slow", "a"),
            event_bus.emit("job.fast", "b"),
        )

        assert trace == ["a-start", "a-end", "b"]

    @pytest.mark.asyncio
    async def test_fan_out_completes_before_next_event(self, event_bus):
        trace = []

        async def background(data):
            await asyncio.sleep(0.02)
            trace.append(f"background-{data}")

        event_bus.subscribe("job.run", background, run_async=True)
        event_bus.subscribe("job.next", lambda data: trace.append(f"next-{data}"))

        await asyncio.gather(
            event_bus.emit("job.run", 1),
            event_bus.emit("job.next", 2),
        )

        assert trace == ["background-1", "next-2"]

    @pytest.mark.asyncio
    async def test_concurrent_emitters_preserve_fifo(self, event_bus):
        received: list[tuple[int, int]] = []

        async def handler(data):
            await asyncio.sleep(0)
            received.append(data)

        event_bus.subscribe("test.event", handler)

        async def emit_batch(task_id: int, count: int) -> None:
            for index in range(count):
                await event_bus.emit("test.event", (task_id, index))

        await asyncio.gather(*(emit_batch(task_id, 50) for task_id in range(10)))

        assert len(received) == 500
        for task_id in range(10):
            indices = [index for owner, index in received if owner == task_id]
            assert indices == list(range(50))

    @pytest.mark.asyncio
    async def test_listener_emitting_does_not_deadlock(self, event_bus):
        """A listener may emit without awaiting; the follow-up is queued behind it."""
        trace = []
        followups = []

        def first(data):
            trace.append("first")
            followups.append(asyncio.ensure_future(event_bus.emit("chain.second")))

        event_bus.subscribe("chain.first", first)
        event_bus.subscribe("chain.second", lambda data: trace.append("second"))

        await event_bus.emit("chain.first")
        await asyncio.gather(*followups)

        assert trace == ["first", "second"]

    @pytest.mark.asyncio
    async def test_emit_validates_event_name(self, event_bus, collected_errors):
        with pytest.raises(InvalidArgument):
            await event_bus.emit("")
        assert len(collected_errors) == 1

    @pytest.mark.asyncio
    async def test_queue_idle_after_processing(self, event_bus):
        event_bus.subscribe("job.run", lambda data: data)
        await event_bus.emit("job.run", 1)

        stats = event_bus.get_stats()
        assert stats["queued_events"] == 0
        assert stats["processing"] is False


class TestFanOut:
    """run_async listeners are scheduled and awaited together."""

    @pytest.mark.asyncio
    async def test_fan_out_results_follow_inline_results(self, event_bus):
        async def background(data):
            await asyncio.sleep(0.01)
            return "async"

        event_bus.subscribe("job.run", background, run_async=True, priority=10)
        event_bus.subscribe("job.run", lambda data: "sync", priority=1)

        assert await event_bus.emit("job.run") == ["sync", "async"]

    @pytest.mark.asyncio
    async def test_fan_out_listeners_run_concurrently(self, event_bus):
        started = []
        gate = asyncio.Event()

        async def waiter(data):
            started.append("waiter")
            await gate.wait()
            return "waiter"

        async def opener(data):
            started.append("opener")
            gate.set()
            return "opener"

        event_bus.subscribe("job.run", waiter, run_async=True, priority=2)
        event_bus.subscribe("job.run", opener, run_async=True, priority=1)

        results = await asyncio.wait_for(event_bus.emit("job.run"), timeout=1.0)

        assert started == ["waiter", "opener"]
        assert results == ["waiter", "opener"]

    @pytest.mark.asyncio
    async def test_fan_out_failure_folded_into_results(self, event_bus, collected_errors):
        async def broken(data):
            raise ValueError("boom")

        event_bus.subscribe("job.run", broken, run_async=True)
        event_bus.subscribe("job.run", lambda data: "ok")

        results = await event_bus.emit("job.run")

        assert results[0] == "ok"
        assert isinstance(results[1], ExecutionFailure)
        assert isinstance(results[1].__cause__, ValueError)
        # Fan-out failures are data, not channel errors
        assert collected_errors == []


class TestErrorIsolation:
    """Inline listener failures are reported and do not stop dispatch."""

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self, event_bus, collected_errors):
        def good_1(data):
            return "good_1"

        def bad(data):
            raise RuntimeError("Intentional failure")

        def good_2(data):
            return "good_2"

        event_bus.subscribe("job.run", good_1, priority=3)
        event_bus.subscribe("job.run", bad, priority=2)
        event_bus.subscribe("job.run", good_2, priority=1)

        results = await event_bus.emit("job.run")

        assert results == ["good_1", "good_2"]
        assert len(collected_errors) == 1
        error = collected_errors[0]
        assert isinstance(error, ExecutionFailure)
        assert error.event == "job.run"
        assert error.listener_name == "bad"
        assert isinstance(error.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_async_listener_failure_reported(self, event_bus, collected_errors):
        async def bad(data):
            await asyncio.sleep(0)
            raise KeyError("missing")

        event_bus.subscribe("job.run", bad)

        assert await event_bus.emit("job.run") == []
        assert isinstance(collected_errors[0].__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_failure_without_error_handlers(self, event_bus):
        def bad(data):
            raise RuntimeError("nobody listening")

        event_bus.subscribe("job.run", bad)

        assert await event_bus.emit("job.run") == []


class TestOnceAndWaitFor:
    """Once-only listeners and waiting on events."""

    @pytest.mark.asyncio
    async def test_once_fires_exactly_once(self, event_bus):
        calls = []
        event_bus.once("user.login", lambda data: calls.append(data))

        await event_bus.emit("user.login", 1)
        await event_bus.emit("user.login", 2)

        assert calls == [1]
        assert event_bus.get_listener_count("user.login") == 0

    @pytest.mark.asyncio
    async def test_once_option_on_subscribe(self, event_bus):
        calls = []
        event_bus.subscribe("user.login", lambda data: calls.append(data), once=True, priority=5)
        event_bus.subscribe("user.login", lambda data: calls.append(f"always-{data}"))

        await event_bus.emit("user.login", 1)
        await event_bus.emit("user.login", 2)

        assert calls == [1, "always-1", "always-2"]

    @pytest.mark.asyncio
    async def test_once_fan_out_listener_removed_after_scheduling(self, event_bus):
        calls = []

        async def background(data):
            calls.append(data)

        event_bus.subscribe("user.login", background, once=True, run_async=True)

        await event_bus.emit("user.login", 1)
        await event_bus.emit("user.login", 2)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_once_pattern_listener(self, event_bus):
        calls = []
        event_bus.subscribe("user.*", lambda data: calls.append(data), pattern=True, once=True)

        await event_bus.emit("user.login", 1)
        await event_bus.emit("user.logout", 2)

        assert calls == [1]
        assert event_bus.get_patterns() == []

    @pytest.mark.asyncio
    async def test_wait_for_resolves_with_payload(self, event_bus):
        waiter = asyncio.create_task(event_bus.wait_for("job.done", timeout=1.0))
        await asyncio.sleep(0)

        await event_bus.emit("job.done", {"status": "ok"})

        assert await waiter == {"status": "ok"}
        assert event_bus.get_listener_count("job.done") == 0

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self, event_bus):
        with pytest.raises(WaitTimeout, match="Timeout waiting for event: job.done"):
            await event_bus.wait_for("job.done", timeout=0.05)

        # The temporary listener does not leak
        assert event_bus.get_listener_count("job.done") == 0

    @pytest.mark.asyncio
    async def test_wait_for_timeout_is_timeout_error(self, event_bus):
        with pytest.raises(TimeoutError):
            await event_bus.wait_for("job.done", timeout=0.01)

    @pytest.mark.asyncio
    async def test_wait_for_only_sees_first_emission(self, event_bus):
        waiter = asyncio.create_task(event_bus.wait_for("job.done", timeout=1.0))
        await asyncio.sleep(0)

        await event_bus.emit("job.done", "first")
        await event_bus.emit("job.done", "second")

        assert await waiter == "first"

    @pytest.mark.asyncio
    async def test_emit_later_delays_emission(self, event_bus):
        event_bus.subscribe("job.later", lambda data: data * 2)

        task = asyncio.create_task(event_bus.emit_later("job.later", 21, delay=0.05))
        await asyncio.sleep(0)
        assert event_bus.get_history("job.later") == []

        assert await task == [42]
        assert len(event_bus.get_history("job.later")) == 1

    @pytest.mark.asyncio
    async def test_emit_later_rejects_negative_delay(self, event_bus, collected_errors):
        with pytest.raises(InvalidArgument):
            await event_bus.emit_later("job.later", None, delay=-1)
        assert len(collected_errors) == 1
        assert isinstance(collected_errors[0], InvalidArgument)

    @pytest.mark.asyncio
    async def test_wait_for_rejects_negative_timeout(self, event_bus, collected_errors):
        with pytest.raises(InvalidArgument):
            await event_bus.wait_for("job.done", -1)
        assert len(collected_errors) == 1
        assert isinstance(collected_errors[0], InvalidArgument)
        assert event_bus.get_listener_count("job.done") == 0


class TestContextBinding:
    """Callbacks are bound to ``context`` when provided."""

    @pytest.mark.asyncio
    async def test_callback_bound_to_context(self, event_bus):
        class Recorder:
            def __init__(self):
                self.seen = []

        def record(self, data):
            self.seen.append(data)
            return len(self.seen)

        recorder = Recorder()
        event_bus.subscribe("user.login", record, context=recorder)

        assert await event_bus.emit("user.login", "alice") == [1]
        assert recorder.seen == ["alice"]

    @pytest.mark.asyncio
    async def test_async_callback_bound_to_context(self, event_bus):
        class Greeter:
            prefix = "hi"

        async def greet(self, data):
            return f"{self.prefix} {data}"

        event_bus.subscribe("user.login", greet, context=Greeter())

        assert await event_bus.emit("user.login", "bob") == ["hi bob"]

    @pytest.mark.asyncio
    async def test_bound_method_keeps_its_receiver(self, event_bus, collected_errors):
        class Service:
            def __init__(self):
                self.handled = []

            def handle(self, data):
                self.handled.append(data)
                return data

        service = Service()
        event_bus.subscribe("user.login", service.handle, context=object())

        assert await event_bus.emit("user.login", 1) == [1]
        assert service.handled == [1]
        assert collected_errors == []

    @pytest.mark.asyncio
    async def test_callable_object_and_builtin_with_context(self, event_bus, collected_errors):
        class Doubler:
            def __call__(self, data):
                return data * 2

        event_bus.subscribe("job.run", Doubler(), context=object(), priority=1)
        event_bus.subscribe("job.run", abs, context=object())

        assert await event_bus.emit("job.run", -3) == [-6, 3]
        assert collected_errors == []


class TestLifecycle:
    """Shutdown and emit options."""

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_queue(self):
        bus = EventBus(tracing=False)
        processed = []

        async def slow(data):
            await asyncio.sleep(0.02)
            processed.append(data)

        bus.subscribe("job.run", slow)
        pending = [asyncio.ensure_future(bus.emit("job.run", i)) for i in range(3)]
        await asyncio.sleep(0)

        await bus.shutdown(timeout=1.0)

        assert processed == [0, 1, 2]
        await asyncio.gather(*pending)

    @pytest.mark.asyncio
    async def test_emit_accepts_options(self, event_bus):
        event_bus.subscribe("job.run", lambda data: data)
        assert await event_bus.emit("job.run", 5, {"source": "test"}) == [5]
