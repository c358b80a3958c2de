"""Unit tests for MetricsAggregator."""
from __future__ import annotations

import pytest

from fleetsim.simulation.metrics import ErrorRecord, MetricEvent, MetricsAggregator


@pytest.mark.unit
class TestMetricsAggregator:
    def test_record_counts_and_queues(self):
        m = MetricsAggregator()
        m.record(MetricEvent("packet_lost", 0.1, "d1"))
        m.record(MetricEvent("packet_lost", 0.2, "d2"))
        m.count("messages_sent", 4)
        assert m.counters() == {"messages_sent": 4, "packet_lost": 2}
        drained = m.drain_events()
        assert [e.drone_id for e in drained] == ["d1", "d2"]
        assert m.drain_events() == []

    def test_event_to_dict(self):
        event = MetricEvent("crash", 1.5, "d1", {"trigger": "impact"})
        assert event.to_dict() == {"kind": "crash", "sim_time_s": 1.5,
                                   "drone_id": "d1", "data": {"trigger": "impact"}}

    def test_errors(self):
        m = MetricsAggregator()
        m.add_error(ErrorRecord(3, 0.3, "warning", "integration_fault", "nan", "d1"))
        assert m.errors[0].kind == "integration_fault"
        assert m.summary()["errors"] == 1

    def test_packet_loss_ratio(self):
        m = MetricsAggregator()
        assert m.summary()["packet_loss_ratio"] == 0.0
        m.count("messages_sent", 10)
        m.count("packet_lost", 3)
        assert m.summary()["packet_loss_ratio"] == pytest.approx(0.3)

    def test_fleet_statistics(self, drone_factory):
        m = MetricsAggregator()
        drone = drone_factory(position=(0.0, 0.0, 10.0))
        m.observe_fleet([drone])
        drone.state = drone.state.evolve(position=(3.0, 4.0, 25.0), battery_pct=90.0)
        m.observe_fleet([drone])
        drone.state = drone.state.evolve(position=(3.0, 4.0, 15.0), battery_pct=85.0)
        m.observe_fleet([drone])
        summary = m.summary()
        assert summary["distance_m"]["d1"] == pytest.approx(
            round(((3 ** 2 + 4 ** 2 + 15 ** 2) ** 0.5) + 10.0, 3))
        assert summary["min_battery_pct"]["d1"] == 85.0
        assert summary["max_altitude_m"]["d1"] == 25.0
