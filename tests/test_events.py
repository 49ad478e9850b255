"""Tests for the event bus."""

import threading

from overlay_companion.events import EventBus
from overlay_companion.models import EventType


class TestSubscribe:
    def test_filter_by_type(self, bus):
        sub = bus.subscribe([EventType.MODE_CHANGED])
        bus.publish(EventType.OVERLAY_CREATED, {"n": 1})
        bus.publish(EventType.MODE_CHANGED, {"n": 2})

        events = sub.poll()
        assert [e.payload["n"] for e in events] == [2]

    def test_no_filter_receives_everything(self, bus):
        sub = bus.subscribe()
        for event_type in EventType:
            bus.publish(event_type)
        assert [e.type for e in sub.poll()] == list(EventType)

    def test_new_subscription_starts_now(self, bus):
        bus.publish(EventType.MODE_CHANGED, {"n": 1})
        sub = bus.subscribe()
        bus.publish(EventType.MODE_CHANGED, {"n": 2})

        assert [e.payload["n"] for e in sub.poll()] == [2]

    def test_every_subscriber_gets_a_copy(self, bus):
        first = bus.subscribe()
        second = bus.subscribe()
        bus.publish(EventType.SESSION_ENDED, {"session_id": "s"})

        assert len(first.poll()) == 1
        assert len(second.poll()) == 1

    def test_poll_respects_max_events(self, bus):
        sub = bus.subscribe()
        for n in range(5):
            bus.publish(EventType.MODE_CHANGED, {"n": n})

        assert [e.payload["n"] for e in sub.poll(max_events=2)] == [0, 1]
        assert [e.payload["n"] for e in sub.poll()] == [2, 3, 4]

    def test_poll_timeout_returns_empty(self, bus):
        sub = bus.subscribe()
        assert sub.poll(timeout=0.01) == []


class TestOverflow:
    """Slow subscribers lose their backlog instead of blocking publishers."""

    def test_overflow_drops_backlog(self):
        bus = EventBus(queue_size=3)
        sub = bus.subscribe()
        for n in range(5):
            bus.publish(EventType.MODE_CHANGED, {"n": n})

        assert sub.dropped == 3
        assert [e.payload["n"] for e in sub.poll()] == [3, 4]

    def test_slow_subscriber_does_not_affect_others(self):
        bus = EventBus(queue_size=2)
        slow = bus.subscribe()
        fast = bus.subscribe()
        for n in range(4):
            bus.publish(EventType.MODE_CHANGED, {"n": n})
            fast.poll()

        assert slow.dropped > 0
        assert fast.dropped == 0


class TestUnsubscribe:
    def test_unsubscribe_stops_delivery(self, bus):
        sub = bus.subscribe()
        assert bus.unsubscribe(sub) is True
        bus.publish(EventType.MODE_CHANGED)

        assert sub.closed
        assert sub.poll() == []
        assert bus.subscriber_count() == 0

    def test_unsubscribe_twice(self, bus):
        sub = bus.subscribe()
        bus.unsubscribe(sub)
        assert bus.unsubscribe(sub) is False

    def test_iteration_ends_on_unsubscribe(self, bus):
        sub = bus.subscribe()
        received = []
        ready = threading.Event()

        def consume():
            ready.set()
            for event in sub:
                received.append(event.payload["n"])

        consumer = threading.Thread(target=consume)
        consumer.start()
        ready.wait(1.0)
        bus.publish(EventType.MODE_CHANGED, {"n": 1})
        bus.publish(EventType.MODE_CHANGED, {"n": 2})

        deadline = threading.Event()
        for _ in range(100):
            if len(received) == 2:
                break
            deadline.wait(0.01)
        bus.unsubscribe(sub)
        consumer.join(1.0)

        assert not consumer.is_alive()
        assert received == [1, 2]
