"""Tests for the live update broadcaster."""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import make_counter

from synccounter.broadcast import Broadcaster, Channel, ChannelClosed
from synccounter.live import stream_channel
from synccounter.models import (
    CounterCreatedEvent,
    CounterDeletedEvent,
    CounterIncrementedEvent,
    InitialEvent,
    parse_event,
)


def _drain(channel: Channel):
    """Everything currently queued on a channel, parsed."""
    events = []
    while not channel._queue.empty():
        events.append(parse_event(channel._queue.get_nowait()))
    return events


@pytest.fixture
def snapshot():
    return [make_counter("c1", value=1)]


@pytest.fixture
def broadcaster(snapshot):
    return Broadcaster(lambda: list(snapshot))


@pytest.mark.asyncio
class TestBroadcaster:
    async def test_subscribe_delivers_initial_snapshot_first(self, broadcaster):
        channel = Channel()
        await broadcaster.subscribe(channel)
        await broadcaster.publish(CounterCreatedEvent(counter=make_counter("c2"), timestamp=2))

        initial, created = _drain(channel)
        assert isinstance(initial, InitialEvent)
        assert [c.id for c in initial.counters] == ["c1"]
        assert isinstance(created, CounterCreatedEvent)

    async def test_late_subscriber_gets_initial_before_shared_events(self, broadcaster, snapshot):
        early = Channel()
        await broadcaster.subscribe(early)
        await broadcaster.publish(CounterIncrementedEvent(counter=make_counter("c1", value=2), timestamp=1))
        snapshot[0] = make_counter("c1", value=2)

        late = Channel()
        await broadcaster.subscribe(late)
        await broadcaster.publish(CounterIncrementedEvent(counter=make_counter("c1", value=3), timestamp=2))

        early_events = _drain(early)
        late_events = _drain(late)
        assert [e.type for e in early_events] == ["initial", "counter_incremented", "counter_incremented"]
        assert [e.type for e in late_events] == ["initial", "counter_incremented"]
        assert late_events[0].counters[0].value == 2
        assert late_events[1].counter.value == 3

    async def test_subscribe_and_unsubscribe_are_idempotent(self, broadcaster):
        channel = Channel()
        await broadcaster.subscribe(channel)
        await broadcaster.subscribe(channel)
        assert broadcaster.subscriber_count == 1
        assert len(_drain(channel)) == 1

        await broadcaster.unsubscribe(channel)
        await broadcaster.unsubscribe(channel)
        await broadcaster.unsubscribe(Channel())
        assert broadcaster.subscriber_count == 0
        assert channel.closed

    async def test_events_arrive_in_publish_order(self, broadcaster):
        channel = Channel()
        await broadcaster.subscribe(channel)
        for i in range(20):
            await broadcaster.publish(CounterIncrementedEvent(counter=make_counter("c1", value=i), timestamp=i))

        events = _drain(channel)[1:]
        assert [e.counter.value for e in events] == list(range(20))

    async def test_failing_subscriber_is_pruned_without_hurting_others(self, broadcaster):
        healthy = Channel()
        broken = Channel()
        await broadcaster.subscribe(healthy)
        await broadcaster.subscribe(broken)
        broken.send = MagicMock(side_effect=ChannelClosed("gone"))

        reached = await broadcaster.publish(CounterDeletedEvent(counter_id="c1", timestamp=5))

        assert reached == 1
        assert broadcaster.subscriber_count == 1
        assert [e.type for e in _drain(healthy)] == ["initial", "counter_deleted"]
        assert broken.closed

    async def test_slow_subscriber_is_dropped_when_its_buffer_fills(self, broadcaster):
        slow = Channel(maxsize=2)
        await broadcaster.subscribe(slow)

        await broadcaster.publish(CounterDeletedEvent(counter_id="a", timestamp=1))
        assert broadcaster.subscriber_count == 1
        await broadcaster.publish(CounterDeletedEvent(counter_id="b", timestamp=2))

        assert broadcaster.subscriber_count == 0
        assert slow.closed

    async def test_publish_with_no_subscribers(self, broadcaster):
        assert await broadcaster.publish(CounterDeletedEvent(counter_id="c1", timestamp=1)) == 0

    async def test_concurrent_publish_and_subscribe(self, broadcaster):
        channels = [Channel(maxsize=0) for _ in range(10)]

        async def publisher():
            for i in range(50):
                await broadcaster.publish(CounterDeletedEvent(counter_id=str(i), timestamp=i))
                await asyncio.sleep(0)

        await asyncio.gather(publisher(), *(broadcaster.subscribe(c) for c in channels))

        for channel in channels:
            events = _drain(channel)
            assert events[0].type == "initial"
            ids = [int(e.counter_id) for e in events[1:]]
            assert ids == sorted(ids)


@pytest.mark.asyncio
async def test_stream_channel_yields_lines_and_unsubscribes(monkeypatch, broadcaster):
    monkeypatch.setattr("synccounter.live.broadcaster", broadcaster)
    channel = Channel()
    await broadcaster.subscribe(channel)
    await broadcaster.publish(CounterDeletedEvent(counter_id="c9", timestamp=1))
    channel.close()

    lines = [line async for line in stream_channel(channel)]

    assert all(line.endswith("\n") for line in lines)
    assert [parse_event(line).type for line in lines] == ["initial", "counter_deleted"]
    assert broadcaster.subscriber_count == 0


@pytest.mark.asyncio
async def test_stream_channel_subscribes_only_once_iterated(monkeypatch, broadcaster):
    monkeypatch.setattr("synccounter.live.broadcaster", broadcaster)
    channel = Channel()
    stream = stream_channel(channel)
    assert broadcaster.subscriber_count == 0

    first = await stream.__anext__()
    assert parse_event(first).type == "initial"
    assert broadcaster.subscriber_count == 1

    await stream.aclose()
    assert broadcaster.subscriber_count == 0
    assert channel.closed
