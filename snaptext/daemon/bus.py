"""In-process event bus carrying pipeline notifications to subscribers."""

import asyncio
import inspect
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


@dataclass
class Event:
    """Something that happened in the pipeline, e.g. ``ocr.completed``."""
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: Optional[str] = None
    correlation_id: Optional[str] = None


Handler = Callable[[Event], Any]

# Queued by stop() so the processor drains everything emitted before it
_STOP = object()


def _weak(handler: Handler) -> Callable[[], Optional[Handler]]:
    # A plain weakref to a bound method dies as soon as subscribe() returns
    if inspect.ismethod(handler):
        return weakref.WeakMethod(handler)
    return weakref.ref(handler)


class EventBus:
    """
    Fire-and-forget pub/sub between pipeline services.

    Event types are dotted ``category.action`` names (``ocr.completed``,
    ``ocr.failed``, ``history.inserted``, ``bulk.progress``,
    ``watcher.signal``, ``notify.error``). Subscriptions take glob patterns
    such as ``ocr.*`` or ``*``. Handlers are held weakly, so a subscriber
    that goes away stops receiving events without unsubscribing.

    Publishing never blocks the pipeline: when the bounded queue is full the
    event is dropped and counted.
    """

    def __init__(self, maxsize: int = 1000):
        self._subscribers: Dict[str, List[Callable[[], Optional[Handler]]]] = defaultdict(list)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._processor_task: Optional[asyncio.Task] = None
        self._stats: Dict[str, int] = defaultdict(int)

    @property
    def running(self) -> bool:
        return self._processor_task is not None

    @staticmethod
    def matches(event_type: str, pattern: str) -> bool:
        return fnmatchcase(event_type, pattern)

    def subscribe(self, pattern: str, handler: Handler) -> None:
        self._subscribers[pattern].append(_weak(handler))
        logger.debug(f"Subscribed handler to pattern: {pattern}")

    def unsubscribe(self, pattern: str, handler: Handler) -> None:
        self._subscribers[pattern] = [
            ref for ref in self._subscribers[pattern]
            if ref() is not None and ref() != handler
        ]

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None, source: Optional[str] = None) -> bool:
        """Build and queue an event; returns False if it was dropped."""
        return self.emit_nowait(Event(type=event_type, data=data or {}, source=source))

    def emit_nowait(self, event: Event) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            logger.warning(f"Event queue full, dropping event: {event.type}")
            return False
        self._stats["emitted"] += 1
        return True

    async def emit(self, event: Event) -> bool:
        return self.emit_nowait(event)

    async def start(self) -> None:
        if self._processor_task is not None:
            logger.warning("Event bus already running")
            return
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Deliver every event already queued, then stop the processor."""
        if self._processor_task is None:
            return
        await self._queue.put(_STOP)
        await self._processor_task
        self._processor_task = None
        logger.info("Event bus stopped")

    async def _process_events(self) -> None:
        while True:
            event = await self._queue.get()
            if event is _STOP:
                return
            try:
                await self._dispatch(event)
                self._stats["processed"] += 1
            except Exception as e:
                logger.error(f"Error processing event {event.type}: {e}")
                self._stats["processing_errors"] += 1

    def _live_handlers(self, event_type: str) -> List[Handler]:
        handlers = []
        for pattern, refs in list(self._subscribers.items()):
            if not self.matches(event_type, pattern):
                continue
            alive = []
            for ref in refs:
                handler = ref()
                if handler is not None:
                    alive.append(ref)
                    handlers.append(handler)
            self._subscribers[pattern] = alive
        return handlers

    async def _dispatch(self, event: Event) -> None:
        pending = []
        for handler in self._live_handlers(event.type):
            try:
                result = handler(event)
            except Exception as e:
                self._handler_failed(event, e)
                continue
            if inspect.isawaitable(result):
                pending.append(result)

        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self._handler_failed(event, result)

    def _handler_failed(self, event: Event, error: Exception) -> None:
        logger.error(f"Handler error for event {event.type}: {error}")
        self._stats["handler_errors"] += 1

    def get_stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["queued"] = self._queue.qsize()
        return stats
