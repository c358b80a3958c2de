"""Unit tests for EventBus: pub/sub delivery, filtering and overflow."""
from __future__ import annotations

import queue
import threading

import pytest

from fleetsim.comms.event_bus import EventBus


@pytest.mark.unit
class TestEventBusBasics:
    def test_subscribe_returns_queue(self):
        assert isinstance(EventBus().subscribe(), queue.Queue)

    def test_publish_delivers_to_subscriber(self):
        bus = EventBus()
        q = bus.subscribe()
        bus.publish("sim_telemetry", {"tick": 1})
        msg = q.get_nowait()
        assert msg == {"type": "sim_telemetry", "data": {"tick": 1}}

    def test_publish_without_data(self):
        bus = EventBus()
        q = bus.subscribe()
        bus.publish("ping")
        assert q.get_nowait() == {"type": "ping"}

    def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        q = bus.subscribe()
        bus.unsubscribe(q)
        bus.publish("after")
        assert q.empty()

    def test_unsubscribe_unknown_queue_is_safe(self):
        EventBus().unsubscribe(queue.Queue())

    def test_type_filter(self):
        bus = EventBus()
        results = bus.subscribe("sim_result")
        everything = bus.subscribe()
        bus.publish("sim_telemetry", {"tick": 1})
        bus.publish("sim_result", {"outcome": "success"})
        assert results.qsize() == 1
        assert results.get_nowait()["type"] == "sim_result"
        assert everything.qsize() == 2


@pytest.mark.unit
class TestEventBusOverflow:
    def test_full_queue_drops_oldest(self):
        bus = EventBus(maxsize=3)
        q = bus.subscribe()
        for i in range(5):
            bus.publish("tick", {"n": i})
        assert [q.get_nowait()["data"]["n"] for _ in range(3)] == [2, 3, 4]

    def test_concurrent_publishers(self):
        bus = EventBus(maxsize=10_000)
        q = bus.subscribe()

        def spam(prefix):
            for i in range(200):
                bus.publish(prefix, {"n": i})

        threads = [threading.Thread(target=spam, args=(f"t{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert q.qsize() == 800
