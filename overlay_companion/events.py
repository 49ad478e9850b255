"""
Publish/subscribe channel for server state changes.

Subscribers get their own bounded queue. Publishing never blocks: when a
subscriber falls behind, its backlog is thrown away and counted in
``Subscription.dropped`` before the new event is queued.
"""

import logging
import queue
import threading
import uuid
from typing import Any, Dict, Iterable, Iterator, List, Optional

from overlay_companion.models import Event, EventType

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Subscription:
    """Live stream of events matching a type filter, starting at subscribe time."""

    def __init__(self, types: Optional[Iterable[EventType]], maxsize: int):
        self.id = uuid.uuid4().hex
        self.types = frozenset(EventType(t) for t in types) if types else None
        self.dropped = 0
        self._queue: "queue.Queue[Optional[Event]]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def wants(self, event: Event) -> bool:
        return self.types is None or event.type in self.types

    def offer(self, event: Event) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(event)
            return
        except queue.Full:
            pass
        discarded = self._drain()
        self.dropped += discarded
        logger.warning(
            "Subscriber %s fell behind; dropped %d queued events", self.id, discarded
        )
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def poll(self, max_events: int = 100, timeout: float = 0.0) -> List[Event]:
        """Return up to ``max_events`` events, waiting up to ``timeout`` for the first."""
        events: List[Event] = []
        try:
            first = self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
        except queue.Empty:
            return events
        if first is None:
            return events
        events.append(first)
        while len(events) < max_events:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is None:
                break
            events.append(item)
        return events

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._drain()
        try:
            # Wake an iterator blocked in get()
            self._queue.put_nowait(None)
        except queue.Full:
            pass

    def _drain(self) -> int:
        count = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return count
            count += 1

    def __iter__(self) -> Iterator[Event]:
        while not self.closed:
            item = self._queue.get()
            if item is None:
                return
            yield item


class EventBus:
    """Fan-out of events to every active subscription."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, types: Optional[Iterable[EventType]] = None) -> Subscription:
        subscription = Subscription(types, self.queue_size)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
        subscription.close()
        return removed is not None

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def publish(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(type=event_type, payload=payload or {})
        with self._lock:
            targets = list(self._subscriptions.values())
        for subscription in targets:
            if subscription.wants(event):
                subscription.offer(event)
        return event

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def close(self) -> None:
        with self._lock:
            targets = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in targets:
            subscription.close()
