"""
Unit Tests for the Log Broadcast Hub
"""
import asyncio

import pytest

from sandbox_preview.models.session import LogEvent, LogEventKind
from sandbox_preview.services.log_hub import LogBroadcastHub


def event(session_id, message, kind=LogEventKind.LOG):
    return LogEvent(session_id=session_id, kind=kind, message=message)


class TestLogBroadcastHub:

    def test_publish_without_observers_is_noop(self):
        hub = LogBroadcastHub()

        assert hub.publish("nobody", event("nobody", "hello")) == 0
        assert not hub.has_observers("nobody")

    @pytest.mark.asyncio
    async def test_delivers_in_publish_order(self):
        hub = LogBroadcastHub()
        subscription = hub.subscribe("s1")

        for i in range(5):
            hub.publish("s1", event("s1", f"line {i}"))

        received = [(await subscription.get()).message for _ in range(5)]
        assert received == [f"line {i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_every_observer_gets_every_event(self):
        hub = LogBroadcastHub()
        first = hub.subscribe("s1")
        second = hub.subscribe("s1")

        assert hub.publish("s1", event("s1", "hello")) == 2
        assert (await first.get()).message == "hello"
        assert (await second.get()).message == "hello"

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self):
        hub = LogBroadcastHub()
        subscription = hub.subscribe("s1")

        hub.publish("s2", event("s2", "not for you"))
        hub.publish("s1", event("s1", "for you"))

        assert (await subscription.get()).message == "for you"
        assert subscription.queue.empty()

    @pytest.mark.asyncio
    async def test_no_backlog_for_late_subscribers(self):
        hub = LogBroadcastHub()
        early = hub.subscribe("s1")
        hub.publish("s1", event("s1", "before"))

        late = hub.subscribe("s1")
        hub.publish("s1", event("s1", "after"))

        assert (await late.get()).message == "after"
        assert [(await early.get()).message for _ in range(2)] == ["before", "after"]

    def test_empty_observer_set_is_removed(self):
        hub = LogBroadcastHub()
        first = hub.subscribe("s1")
        second = hub.subscribe("s1")

        hub.unsubscribe(first)
        assert hub.observer_count("s1") == 1

        hub.unsubscribe(second)
        assert not hub.has_observers("s1")
        assert hub.observer_count() == 0

    def test_unsubscribe_twice(self):
        hub = LogBroadcastHub()
        subscription = hub.subscribe("s1")

        hub.unsubscribe(subscription)
        hub.unsubscribe(subscription)

        assert not hub.has_observers("s1")

    @pytest.mark.asyncio
    async def test_slow_observer_drops_only_its_own_events(self):
        hub = LogBroadcastHub(queue_size=2)
        slow = hub.subscribe("s1")
        fast = hub.subscribe("s1")

        hub.publish("s1", event("s1", "a"))
        assert (await fast.get()).message == "a"
        hub.publish("s1", event("s1", "b"))
        assert (await fast.get()).message == "b"
        hub.publish("s1", event("s1", "c"))
        assert (await fast.get()).message == "c"

        assert slow.dropped == 1
        assert fast.dropped == 0

    @pytest.mark.asyncio
    async def test_iteration_stops_after_exit_event(self):
        hub = LogBroadcastHub()
        subscription = hub.subscribe("s1")

        hub.publish("s1", event("s1", "compiling"))
        hub.publish("s1", event("s1", "oops", LogEventKind.ERROR))
        hub.publish("s1", LogEvent(session_id="s1", kind=LogEventKind.EXIT, message="done", exit_code=0))
        hub.publish("s1", event("s1", "never read"))

        kinds = [e.kind async for e in subscription]
        assert kinds == [LogEventKind.LOG, LogEventKind.ERROR, LogEventKind.EXIT]

    @pytest.mark.asyncio
    async def test_unsubscribe_wakes_pending_reader(self):
        hub = LogBroadcastHub()
        subscription = hub.subscribe("s1")

        reader = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)
        hub.unsubscribe(subscription)

        assert await asyncio.wait_for(reader, timeout=1) is None

    def test_event_serialization(self):
        exit_event = LogEvent(session_id="s1", kind=LogEventKind.EXIT, message="done", exit_code=2)

        data = exit_event.to_dict()

        assert data["sessionId"] == "s1"
        assert data["type"] == "exit"
        assert data["exitCode"] == 2
        assert "exitCode" not in event("s1", "x").to_dict()
