"""
Unit tests for EventBus
"""

import asyncio
import threading

import pytest

from backend.commons.runtime.event_bus import EventBus
from backend.commons.runtime.types import AgentEvent, EventType, Message, MessageRole


def message_event(agent_id: str, text: str) -> AgentEvent:
    return AgentEvent(
        type=EventType.MESSAGE,
        agent_id=agent_id,
        payload=Message(role=MessageRole.USER, content=text),
    )


def final_event(agent_id: str, **payload) -> AgentEvent:
    return AgentEvent(type=EventType.FINAL, agent_id=agent_id, payload=payload)


def test_publish_dispatches_in_order():
    """Subscribers see events in publication order"""
    bus = EventBus("s1")
    received = []
    bus.subscribe(lambda e: received.append(e.payload.content))

    for text in ["a", "b", "c"]:
        bus.publish(message_event("agent-1", text))

    assert received == ["a", "b", "c"]
    assert bus.published_count == 3


def test_subscribe_filter_by_type():
    """Type filters only deliver matching events"""
    bus = EventBus("s1")
    finals = []
    bus.subscribe(finals.append, [EventType.FINAL])

    bus.publish(message_event("agent-1", "hi"))
    bus.publish(final_event("agent-1", done=True))

    assert len(finals) == 1
    assert finals[0].type == EventType.FINAL


def test_unsubscribe():
    bus = EventBus("s1")
    received = []
    unsubscribe = bus.subscribe(received.append)

    bus.publish(message_event("agent-1", "one"))
    unsubscribe()
    bus.publish(message_event("agent-1", "two"))

    assert len(received) == 1
    assert bus.subscriber_count() == 0


def test_failing_handler_does_not_stop_dispatch():
    """A handler error is logged and later subscribers still run"""
    bus = EventBus("s1")
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    bus.publish(message_event("agent-1", "hi"))

    assert len(received) == 1


def test_publish_after_close_raises():
    bus = EventBus("s1")
    bus.close()

    assert bus.closed
    with pytest.raises(RuntimeError):
        bus.publish(message_event("agent-1", "late"))


def test_concurrent_publishers_keep_a_single_order():
    """Events from many threads are delivered one at a time, none lost"""
    bus = EventBus("s1")
    received = []
    in_handler = threading.Event()
    overlaps = []

    def handler(event):
        if in_handler.is_set():
            overlaps.append(event)
        in_handler.set()
        received.append(event)
        in_handler.clear()

    bus.subscribe(handler)

    def publisher(n):
        for i in range(50):
            bus.publish(message_event(f"agent-{n}", str(i)))

    threads = [threading.Thread(target=publisher, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(received) == 200
    assert overlaps == []
    for n in range(4):
        texts = [e.payload.content for e in received if e.agent_id == f"agent-{n}"]
        assert texts == [str(i) for i in range(50)]


@pytest.mark.asyncio
async def test_consume_receives_events_published_after_call():
    """consume() subscribes immediately, so nothing published after it is missed"""
    bus = EventBus("s1")
    stream = bus.consume()

    bus.publish(message_event("agent-1", "first"))
    bus.publish(final_event("agent-1", done=True))

    received = []
    async for event in stream:
        received.append(event)
        if event.type == EventType.FINAL:
            break
    stream.close()

    assert [e.type for e in received] == [EventType.MESSAGE, EventType.FINAL]
    assert bus.subscriber_count() == 0


@pytest.mark.asyncio
async def test_consume_filter_by_type():
    bus = EventBus("s1")

    async with bus.consume(event_types=[EventType.FINAL]) as stream:
        bus.publish(message_event("agent-1", "ignored"))
        bus.publish(final_event("agent-1", n=1))
        event = await stream.__anext__()

    assert event.type == EventType.FINAL
    assert event.payload == {"n": 1}


@pytest.mark.asyncio
async def test_consume_from_another_thread():
    bus = EventBus("s1")

    async with bus.consume() as stream:
        thread = threading.Thread(target=bus.publish, args=(message_event("agent-1", "x"),))
        thread.start()
        event = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
        thread.join()

    assert event.payload.content == "x"


@pytest.mark.asyncio
async def test_consumer_queue_full_drops_events():
    """Bounded consumer queues drop overflow instead of blocking publishers"""
    bus = EventBus("s1", maxsize=2)

    async with bus.consume() as stream:
        for i in range(5):
            bus.publish(message_event("agent-1", str(i)))

        assert stream._queue.qsize() == 2


@pytest.mark.asyncio
async def test_wait_for_matching_event():
    bus = EventBus("s1")

    async def publish_later():
        await asyncio.sleep(0.01)
        bus.publish(final_event("agent-1", who=1))
        bus.publish(final_event("agent-2", who=2))

    task = asyncio.create_task(publish_later())
    event = await bus.wait_for(
        EventType.FINAL, predicate=lambda e: e.agent_id == "agent-2", timeout=1.0
    )
    await task

    assert event.payload == {"who": 2}
    assert bus.subscriber_count() == 0


@pytest.mark.asyncio
async def test_wait_for_timeout():
    bus = EventBus("s1")

    with pytest.raises(asyncio.TimeoutError):
        await bus.wait_for(EventType.FINAL, timeout=0.05)

    assert bus.subscriber_count() == 0
