"""Unit tests for the in-process event bus."""

from __future__ import annotations

import pytest

from termpilot.services.event_bus import GLOBAL_CHANNEL, EventBus, session_channel


@pytest.mark.asyncio
async def test_subscribe_and_publish():
    bus = EventBus()
    queue = bus.subscribe("test:channel")
    await bus.publish("test:channel", {"type": "hello", "data": {"msg": "world"}})
    event = queue.get_nowait()
    assert event["type"] == "hello"
    assert event["data"]["msg"] == "world"


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    queue = bus.subscribe("test:channel")
    bus.unsubscribe("test:channel", queue)
    await bus.publish("test:channel", {"type": "ignored"})
    assert queue.empty()
    assert bus.subscriber_count("test:channel") == 0


@pytest.mark.asyncio
async def test_multiple_subscribers():
    bus = EventBus()
    queues = [bus.subscribe("ch") for _ in range(3)]
    await bus.publish("ch", {"type": "broadcast"})
    for q in queues:
        assert q.get_nowait()["type"] == "broadcast"


@pytest.mark.asyncio
async def test_channel_isolation():
    bus = EventBus()
    global_queue = bus.subscribe(GLOBAL_CHANNEL)
    session_queue = bus.subscribe(session_channel("abc"))
    bus.publish_nowait(session_channel("abc"), {"type": "agent_state"})
    assert global_queue.empty()
    assert session_queue.get_nowait()["type"] == "agent_state"


@pytest.mark.asyncio
async def test_full_queue_drops_event():
    bus = EventBus()
    queue = bus.subscribe("ch")
    for i in range(1000):
        bus.publish_nowait("ch", {"type": "tick", "data": {"i": i}})
    bus.publish_nowait("ch", {"type": "overflow"})
    assert queue.qsize() == 1000


def test_unsubscribe_unknown_queue_is_noop():
    bus = EventBus()
    other = EventBus().subscribe("ch")
    bus.unsubscribe("ch", other)
    bus.subscribe("ch")
    bus.unsubscribe("ch", other)
    assert bus.subscriber_count("ch") == 1


def test_session_channel_name():
    assert session_channel("s1") == "session:s1"
