"""
Event Bus: typed publish/subscribe between the session and its consumers.

Producers (channel callbacks) run synchronously inside a transport reader, so
they only enqueue. Dispatch happens in start() (background task) or drain()
(tests, shutdown). A failing handler is logged and never blocks the others.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from krakengrid.infra.logging_cfg import log_event

log = logging.getLogger("krakengrid")


class EventType(Enum):
    """Event categories published by the session."""
    CHANNEL_STATUS = auto()       # data: channel, state
    MESSAGE = auto()              # data: channel, message (every decoded inbound message)
    TICKER = auto()               # data: symbol, ticker, message
    ORDER_RESPONSE = auto()       # data: response (OrderResponse)
    ERROR = auto()                # data: channel, error
    RECONNECT_EXHAUSTED = auto()  # data: channel, attempts


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name} from {self.source or '-'} @ {self.timestamp_ms})"


Handler = Callable[[Event], Union[Awaitable[None], None]]


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # higher runs first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or getattr(self.handler, "__name__", "handler")


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(EventType.TICKER, on_ticker)
        task = asyncio.create_task(bus.start())
        bus.emit(EventType.TICKER, symbol="BTC/USD", ticker={...})
        bus.stop()
    """

    DEFAULT_HISTORY_SIZE = 200

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE, queue_size: int = 0) -> None:
        self._subs: Dict[EventType, List[Subscription]] = collections.defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(0, queue_size))
        self._history: Deque[Event] = collections.deque(maxlen=max(0, history_size))
        self._running = False
        self._published = 0
        self._processed = 0
        self._dropped = 0
        self._handler_errors = 0

    # --- subscriptions ---

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        sub = Subscription(handler, priority, filter_fn, name)
        subs = self._subs[event_type]
        subs.append(sub)
        # stable: equal priorities keep subscription order
        subs.sort(key=lambda s: -s.priority)
        log_event(log, "event_bus_subscribe", level=logging.DEBUG, event_type=event_type.name, handler_name=sub.label)
        return sub

    def unsubscribe(self, event_type: EventType, subscription: Subscription) -> bool:
        subs = self._subs.get(event_type, [])
        if subscription not in subs:
            return False
        subs.remove(subscription)
        return True

    def get_subscriber_count(self, event_type: EventType) -> int:
        return len(self._subs.get(event_type, []))

    # --- publishing ---

    def publish_sync(self, event: Event) -> bool:
        """Enqueue without awaiting; False when a bounded queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            log_event(log, "event_bus_queue_full", level=logging.WARNING, event_type=event.type.name)
            return False
        self._published += 1
        return True

    def emit(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        return self.publish_sync(Event(type=event_type, data=data, source=source))

    # --- dispatch ---

    async def start(self) -> None:
        """Dispatch until stop() or cancellation. Run as a background task."""
        self._running = True
        try:
            while self._running:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._dispatch(event)
        except asyncio.CancelledError:
            pass
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """Dispatch whatever is queued right now; returns how many events ran."""
        deadline = time.monotonic() + timeout
        n = 0
        while time.monotonic() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
            n += 1
        return n

    async def _dispatch(self, event: Event) -> None:
        self._history.append(event)
        for sub in list(self._subs.get(event.type, [])):
            if sub.filter_fn is not None and not sub.filter_fn(event):
                continue
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._handler_errors += 1
                log_event(
                    log,
                    "event_bus_handler_error",
                    level=logging.ERROR,
                    event_type=event.type.name,
                    handler_name=sub.label,
                    err=str(exc),
                    error_type=type(exc).__name__,
                )
        self._processed += 1

    # --- introspection ---

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "events_published": self._published,
            "events_processed": self._processed,
            "events_dropped": self._dropped,
            "handler_errors": self._handler_errors,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "running": self._running,
        }
