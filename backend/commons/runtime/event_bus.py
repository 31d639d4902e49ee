"""
Commons Event Bus Implementation

Per-session pub/sub channel for AgentEvents. Publication is a serialization
point: subscribers observe events in exactly the order they were published.
"""

import asyncio
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

from .types import AgentEvent, EventType
from ...utils.logger import get_logger

logger = get_logger(__name__)


EventHandler = Callable[[AgentEvent], None]
EventFilter = Callable[[AgentEvent], bool]
Unsubscribe = Callable[[], None]


@dataclass
class _Subscription:
    """Internal subscription record."""

    id: int
    handler: EventHandler
    event_types: Optional[Set[EventType]]

    def matches(self, event: AgentEvent) -> bool:
        return self.event_types is None or event.type in self.event_types


class EventBus:
    """
    Event bus for one session.

    Features:
    - Synchronous, lock-guarded publish (single total order per session)
    - Type-filtered subscriptions, dispatched in subscription order
    - Async consumption for streaming clients (bounded queue per consumer)
    - wait_for() to await a matching future event with a timeout
    """

    def __init__(self, session_id: str, maxsize: int = 1000):
        """
        Initialize event bus.

        Args:
            session_id: Session this bus belongs to
            maxsize: Maximum queue size for each async consumer
        """
        self.session_id = session_id
        self._maxsize = maxsize
        self._lock = threading.RLock()
        self._subscriptions: List[_Subscription] = []
        self._next_id = 0
        self._published = 0
        self._closed = False

    def publish(self, event: AgentEvent) -> None:
        """
        Publish an event to all matching subscribers.

        Raises:
            RuntimeError: If the bus has been closed
        """
        with self._lock:
            if self._closed:
                raise RuntimeError(f"EventBus for session {self.session_id} is closed")

            self._published += 1
            for sub in list(self._subscriptions):
                if not sub.matches(event):
                    continue
                try:
                    sub.handler(event)
                except Exception as e:
                    logger.error(
                        "Error in event handler",
                        exc_info=True,
                        session_id=self.session_id,
                        event_type=event.type.value,
                        error=str(e),
                    )

        logger.debug(
            "Published event",
            session_id=self.session_id,
            event_type=event.type.value,
            agent_id=event.agent_id,
        )

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> Unsubscribe:
        """
        Subscribe to events.

        Args:
            handler: Callback invoked synchronously for each matching event
            event_types: Optional filter; None subscribes to every type

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            sub = _Subscription(
                id=self._next_id,
                handler=handler,
                event_types=set(event_types) if event_types is not None else None,
            )
            self._next_id += 1
            self._subscriptions.append(sub)

        return lambda: self._remove(sub.id)

    def consume(
        self,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> "EventStream":
        """
        Consume events published after this call, in publication order.

        Must be called from a running event loop. The subscription is active
        as soon as this returns; close the stream (or use it as an async
        context manager) to unsubscribe.

        Args:
            event_types: Optional filter for event types

        Returns:
            Async iterator of matching events
        """
        return EventStream(self, event_types, self._maxsize)

    async def wait_for(
        self,
        event_type: EventType,
        predicate: Optional[EventFilter] = None,
        timeout: Optional[float] = None,
    ) -> AgentEvent:
        """
        Wait for the next matching event published after this call.

        Raises:
            asyncio.TimeoutError: If nothing matches within timeout seconds
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def resolve(event: AgentEvent) -> None:
            if not future.done():
                future.set_result(event)

        def handler(event: AgentEvent) -> None:
            if predicate is not None and not predicate(event):
                return
            if _in_loop(loop):
                resolve(event)
            else:
                loop.call_soon_threadsafe(resolve, event)

        unsubscribe = self.subscribe(handler, [event_type])
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            unsubscribe()

    def close(self) -> None:
        """Drop all subscriptions and reject further publication."""
        with self._lock:
            self._closed = True
            self._subscriptions.clear()
        logger.debug("EventBus closed", session_id=self.session_id)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def published_count(self) -> int:
        return self._published

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, sub_id: int) -> None:
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s.id != sub_id]


class EventStream:
    """Async iterator over a bus subscription, fed through a bounded queue."""

    _CLOSED = object()

    def __init__(
        self,
        bus: EventBus,
        event_types: Optional[Iterable[EventType]],
        maxsize: int,
    ):
        self._bus = bus
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._unsubscribe = bus.subscribe(self._handle, event_types)

    def _handle(self, event: AgentEvent) -> None:
        if _in_loop(self._loop):
            self._enqueue(event)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, item) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.error(
                "Consumer queue full, dropping event",
                session_id=self._bus.session_id,
                event_type=getattr(getattr(item, "type", None), "value", None),
            )

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> AgentEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        # Wake a pending __anext__
        try:
            self._queue.put_nowait(self._CLOSED)
        except asyncio.QueueFull:
            pass

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


def _in_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False
