"""
Tests for the in-process event bus.
"""

from __future__ import annotations

import logging

import pytest

from neuron.core.events import (
    JOB_COMPLETED,
    JOB_STARTED,
    QUEUE_MAX_CONSECUTIVE_DROPS,
    Event,
    EventBus,
    EventSource,
    create_event,
)


class TestSubscriptions:
    """Handler registration and delivery."""

    @pytest.mark.asyncio
    async def test_typed_and_global_handlers(self) -> None:
        """Test typed handlers see their type and global handlers see everything."""
        bus = EventBus()
        typed: list[str] = []
        seen: list[str] = []

        async def on_started(event: Event) -> None:
            typed.append(event.payload["job_id"])

        bus.subscribe(JOB_STARTED, on_started)
        bus.subscribe_all(lambda event: seen.append(event.type))

        await bus.emit(create_event(JOB_STARTED, {"job_id": "a"}))
        await bus.emit(create_event(JOB_COMPLETED, {"job_id": "a"}))

        assert typed == ["a"]
        assert seen == [JOB_STARTED, JOB_COMPLETED]

    @pytest.mark.asyncio
    async def test_unsubscribe_handles(self) -> None:
        """Test subscription handles detach their handlers."""
        bus = EventBus()
        calls: list[str] = []
        many = bus.subscribe_many([JOB_STARTED, JOB_COMPLETED], lambda e: calls.append(e.type))
        every = bus.subscribe_all(lambda e: calls.append("all"))

        assert bus.subscriber_count(JOB_STARTED) == 1
        assert bus.subscriber_count() == 3

        many.unsubscribe()
        every.unsubscribe()
        await bus.emit(create_event(JOB_STARTED, {}))

        assert calls == []
        assert bus.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test a raising handler is logged and later handlers still run."""
        bus = EventBus()
        calls: list[str] = []

        def broken(event: Event) -> None:
            raise ValueError("handler bug")

        bus.subscribe(JOB_STARTED, broken)
        bus.subscribe(JOB_STARTED, lambda e: calls.append("ok"))

        with caplog.at_level(logging.WARNING, logger="neuron.core.events"):
            await bus.emit(create_event(JOB_STARTED, {}))

        assert calls == ["ok"]
        assert "handler bug" in caplog.text


class TestMiddleware:
    """Delivery wrapping."""

    @pytest.mark.asyncio
    async def test_middleware_runs_in_order(self) -> None:
        """Test middleware wraps delivery in registration order."""
        bus = EventBus()
        order: list[str] = []

        async def outer(event, next_):
            order.append("outer:before")
            await next_()
            order.append("outer:after")

        async def inner(event, next_):
            order.append("inner")
            await next_()

        bus.use(outer)
        bus.use(inner)
        bus.subscribe(JOB_STARTED, lambda e: order.append("handler"))

        await bus.emit(create_event(JOB_STARTED, {}))

        assert order == ["outer:before", "inner", "handler", "outer:after"]

    @pytest.mark.asyncio
    async def test_middleware_can_drop_events(self) -> None:
        """Test an event is neither delivered nor recorded when middleware skips it."""
        bus = EventBus()
        calls: list[str] = []

        async def only_analysis(event, next_):
            if event.source == EventSource.ANALYSIS:
                await next_()

        bus.use(only_analysis)
        bus.subscribe_all(lambda e: calls.append(e.type))

        await bus.emit(create_event(JOB_STARTED, {}, EventSource.UI))
        await bus.emit(create_event(JOB_COMPLETED, {}, EventSource.ANALYSIS))

        assert calls == [JOB_COMPLETED]
        assert [e.type for e in bus.history()] == [JOB_COMPLETED]


class TestHistoryAndQueues:
    """Bounded history and queue subscribers."""

    @pytest.mark.asyncio
    async def test_history_is_bounded(self) -> None:
        """Test only the newest events are kept and limit takes the tail."""
        bus = EventBus(history_limit=3)
        for i in range(5):
            await bus.emit(create_event(JOB_STARTED, {"n": i}))

        assert [e.payload["n"] for e in bus.history()] == [2, 3, 4]
        assert [e.payload["n"] for e in bus.history(limit=2)] == [3, 4]

        bus.clear_history()
        assert bus.history() == []

    @pytest.mark.asyncio
    async def test_event_to_dict(self) -> None:
        """Test the serialized form carries the source value and ISO timestamp."""
        data = create_event(JOB_STARTED, {"job_id": "a"}, EventSource.ANALYSIS).to_dict()

        assert data["type"] == JOB_STARTED
        assert data["source"] == "analysis"
        assert data["payload"] == {"job_id": "a"}
        assert "T" in data["timestamp"]

    @pytest.mark.asyncio
    async def test_queue_receives_matching_types(self) -> None:
        """Test a typed queue only receives its event types."""
        bus = EventBus()
        queue = bus.subscribe_queue([JOB_COMPLETED])

        await bus.emit(create_event(JOB_STARTED, {}))
        await bus.emit(create_event(JOB_COMPLETED, {"job_id": "a"}))

        assert queue.qsize() == 1
        assert queue.get_nowait().payload == {"job_id": "a"}

        bus.unsubscribe_queue(queue)
        await bus.emit(create_event(JOB_COMPLETED, {}))
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_full_queue_is_removed_after_repeated_drops(self) -> None:
        """Test a queue that stays full is unsubscribed without blocking emit."""
        bus = EventBus()
        queue = bus.subscribe_queue(maxsize=1)

        await bus.emit(create_event(JOB_STARTED, {"n": 0}))
        for i in range(QUEUE_MAX_CONSECUTIVE_DROPS - 1):
            await bus.emit(create_event(JOB_STARTED, {"n": i + 1}))
        assert bus.subscriber_count() == 1

        await bus.emit(create_event(JOB_STARTED, {"n": -1}))

        assert bus.subscriber_count() == 0
        assert queue.get_nowait().payload == {"n": 0}

    @pytest.mark.asyncio
    async def test_drained_queue_resets_drop_count(self) -> None:
        """Test a successful delivery clears the consecutive drop count."""
        bus = EventBus()
        queue = bus.subscribe_queue(maxsize=1)

        for _ in range(3):
            await bus.emit(create_event(JOB_STARTED, {}))
            for _ in range(QUEUE_MAX_CONSECUTIVE_DROPS - 1):
                await bus.emit(create_event(JOB_STARTED, {}))
            queue.get_nowait()

        assert bus.subscriber_count() == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_all(self) -> None:
        """Test unsubscribe_all detaches handlers and queues."""
        bus = EventBus()
        bus.subscribe(JOB_STARTED, lambda e: None)
        bus.subscribe_all(lambda e: None)
        bus.subscribe_queue()

        bus.unsubscribe_all()

        assert bus.subscriber_count() == 0
