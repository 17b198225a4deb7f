"""Tests for event bus."""

import asyncio
import pytest

from rgpanel.engine.bus import EventBus, Event


@pytest.mark.asyncio
async def test_event_emit_and_subscribe():
    """Test basic pub/sub functionality."""
    bus = EventBus()
    await bus.start()

    received_events = []

    async def handler(event: Event):
        received_events.append(event)

    bus.subscribe("search.*", handler)

    await bus.emit(Event(
        type="search.matches",
        data={"records": []},
        query_id=7
    ))
    await bus.join()

    assert len(received_events) == 1
    assert received_events[0].type == "search.matches"
    assert received_events[0].query_id == 7

    await bus.stop()


@pytest.mark.asyncio
async def test_wildcard_subscription():
    """Test wildcard pattern matching."""
    bus = EventBus()
    await bus.start()

    all_events = []
    search_events = []

    def all_handler(event: Event):
        all_events.append(event)

    def search_handler(event: Event):
        search_events.append(event)

    bus.subscribe("*", all_handler)
    bus.subscribe("search.*", search_handler)

    await bus.emit(Event(type="search.matches", data={}))
    await bus.emit(Event(type="session.closed", data={}))
    await bus.emit(Event(type="search.summary", data={}))
    await bus.join()

    assert len(all_events) == 3
    assert len(search_events) == 2

    await bus.stop()


@pytest.mark.asyncio
async def test_events_handled_in_order_one_at_a_time():
    bus = EventBus()
    await bus.start()

    seen = []
    active = 0

    async def slow_handler(event: Event):
        nonlocal active
        active += 1
        assert active == 1
        await asyncio.sleep(0.001 * (5 - event.data["n"]))
        seen.append(event.data["n"])
        active -= 1

    bus.subscribe("search.matches", slow_handler)
    for n in range(5):
        bus.emit_nowait(Event(type="search.matches", data={"n": n}))
    await bus.join()

    assert seen == [0, 1, 2, 3, 4]
    await bus.stop()


@pytest.mark.asyncio
async def test_handler_errors_are_counted_not_raised():
    bus = EventBus()
    await bus.start()
    received = []

    def broken(event: Event):
        raise ValueError("boom")

    def healthy(event: Event):
        received.append(event)

    bus.subscribe("search.summary", broken)
    bus.subscribe("search.summary", healthy)
    await bus.emit(Event(type="search.summary", data={}))
    await bus.join()

    assert len(received) == 1
    assert bus.get_stats()["handler_errors"] == 1
    await bus.stop()


@pytest.mark.asyncio
async def test_bounded_queue_drops_when_full():
    """Test behavior when event queue is full."""
    bus = EventBus(maxsize=2)

    await bus.emit(Event(type="test.1", data={}))
    await bus.emit(Event(type="test.2", data={}))
    await bus.emit(Event(type="test.3", data={}))
    assert not bus.emit_nowait(Event(type="test.4", data={}))

    stats = bus.get_stats()
    assert stats['dropped'] == 2
    assert stats['emitted'] == 2


@pytest.mark.asyncio
async def test_bound_method_subscribers_are_weak():
    bus = EventBus()
    await bus.start()

    class Listener:
        def __init__(self):
            self.events = []

        def on_event(self, event):
            self.events.append(event)

    listener = Listener()
    bus.subscribe("search.*", listener.on_event)
    await bus.emit(Event(type="search.exited", data={}))
    await bus.join()
    assert len(listener.events) == 1

    del listener
    await bus.emit(Event(type="search.exited", data={}))
    await bus.join()
    assert bus.get_stats()["handler_errors"] == 0
    await bus.stop()


def test_pattern_matching():
    """Test pattern matching logic."""
    bus = EventBus()

    assert bus._matches_pattern("search.matches", "search.matches")
    assert not bus._matches_pattern("search.matches", "search.summary")

    assert bus._matches_pattern("search.matches", "search.*")
    assert not bus._matches_pattern("session.closed", "search.*")

    assert bus._matches_pattern("anything", "*")


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = EventBus()
    await bus.start()
    received = []

    def handler(event: Event):
        received.append(event)

    bus.subscribe("search.*", handler)
    await bus.emit(Event(type="search.summary", data={}))
    await bus.join()

    bus.unsubscribe("search.*", handler)
    await bus.emit(Event(type="search.summary", data={}))
    await bus.join()

    assert len(received) == 1
    await bus.stop()
