"""Tests for event bus."""

import asyncio
import pytest

from snaptext.daemon.bus import EventBus, Event


@pytest.mark.asyncio
async def test_event_emit_and_subscribe():
    """Test basic pub/sub functionality."""
    bus = EventBus()
    await bus.start()

    received_events = []

    async def handler(event: Event):
        received_events.append(event)

    bus.subscribe("ocr.*", handler)

    await bus.emit(Event(
        type="ocr.completed",
        data={"backend": "local"}
    ))

    # Give time for processing
    await asyncio.sleep(0.1)

    assert len(received_events) == 1
    assert received_events[0].type == "ocr.completed"
    assert received_events[0].data["backend"] == "local"

    await bus.stop()


@pytest.mark.asyncio
async def test_wildcard_subscription():
    """Test wildcard pattern matching."""
    bus = EventBus()
    await bus.start()

    all_events = []
    ocr_events = []

    async def all_handler(event: Event):
        all_events.append(event)

    async def ocr_handler(event: Event):
        ocr_events.append(event)

    bus.subscribe("*", all_handler)
    bus.subscribe("ocr.*", ocr_handler)

    await bus.emit(Event(type="ocr.completed", data={}))
    await bus.emit(Event(type="history.inserted", data={}))
    await bus.emit(Event(type="ocr.failed", data={}))

    await asyncio.sleep(0.1)

    assert len(all_events) == 3
    assert len(ocr_events) == 2

    await bus.stop()


@pytest.mark.asyncio
async def test_bound_method_handlers_stay_subscribed():
    """Bound methods are held weakly but must not vanish while the owner lives."""

    class Counter:
        def __init__(self):
            self.count = 0

        async def on_event(self, event: Event):
            self.count += 1

    bus = EventBus()
    await bus.start()
    counter = Counter()
    bus.subscribe("history.inserted", counter.on_event)

    await bus.emit(Event(type="history.inserted", data={}))
    await asyncio.sleep(0.1)

    assert counter.count == 1
    await bus.stop()


@pytest.mark.asyncio
async def test_sync_handler_and_emit_nowait():
    bus = EventBus()
    await bus.start()
    seen = []

    def handler(event: Event):
        seen.append(event.type)

    bus.subscribe("bulk.progress", handler)
    assert bus.emit_nowait(Event(type="bulk.progress", data={"completed": 1, "total": 2}))

    await asyncio.sleep(0.2)
    assert seen == ["bulk.progress"]
    await bus.stop()


@pytest.mark.asyncio
async def test_handler_errors_are_counted():
    bus = EventBus()
    await bus.start()

    async def broken(event: Event):
        raise RuntimeError("boom")

    bus.subscribe("ocr.failed", broken)
    await bus.emit(Event(type="ocr.failed", data={}))
    await asyncio.sleep(0.1)

    assert bus.get_stats()["handler_errors"] == 1
    await bus.stop()


@pytest.mark.asyncio
async def test_event_queue_full():
    """Test behavior when event queue is full."""
    bus = EventBus(maxsize=2)
    await bus.start()

    # Fill the queue
    await bus.emit(Event(type="test.1", data={}))
    await bus.emit(Event(type="test.2", data={}))

    # This should be dropped
    await bus.emit(Event(type="test.3", data={}))
    assert bus.emit_nowait(Event(type="test.4", data={})) is False

    stats = bus.get_stats()
    assert stats['dropped'] == 2

    await bus.stop()


def test_pattern_matching():
    """Test pattern matching logic."""
    matches = EventBus.matches

    # Exact match
    assert matches("ocr.completed", "ocr.completed")
    assert not matches("ocr.completed", "ocr.failed")

    # Wildcard
    assert matches("ocr.completed", "ocr.*")
    assert matches("watcher.signal", "watcher.*")
    assert not matches("ocr.completed", "history.*")
    assert not matches("ocrx.completed", "ocr.*")

    # Global wildcard
    assert matches("anything", "*")
    assert matches("bulk.completed", "*")


@pytest.mark.asyncio
async def test_publish_builds_event():
    bus = EventBus()
    await bus.start()
    seen = []

    async def handler(event: Event):
        seen.append(event)

    bus.subscribe("notify.*", handler)
    assert bus.publish("notify.success", {"title": "Text copied"}, source="notifier")
    await asyncio.sleep(0.1)

    assert seen[0].type == "notify.success"
    assert seen[0].data == {"title": "Text copied"}
    assert seen[0].source == "notifier"
    await bus.stop()


@pytest.mark.asyncio
async def test_stop_delivers_queued_events():
    bus = EventBus()
    seen = []

    async def handler(event: Event):
        seen.append(event.type)

    bus.subscribe("*", handler)
    await bus.start()
    for i in range(5):
        bus.publish(f"bulk.item{i}")
    await bus.stop()

    assert seen == [f"bulk.item{i}" for i in range(5)]
    assert not bus.running
    assert bus.get_stats()["processed"] == 5


@pytest.mark.asyncio
async def test_stop_without_start_is_noop():
    bus = EventBus()
    await bus.stop()
    assert not bus.running
