"""Unit tests for SimulationClock pacing."""
from __future__ import annotations

import threading

import pytest

from fleetsim.simulation.clock import Pacing, SimulationClock


class FakeTime:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class RecordingEvent:
    """threading.Event stand-in that records requested waits."""

    def __init__(self, is_set: bool = False) -> None:
        self.waits: list[float] = []
        self._set = is_set

    def is_set(self) -> bool:
        return self._set

    def wait(self, timeout: float) -> bool:
        self.waits.append(timeout)
        return self._set


@pytest.mark.unit
class TestSimulationClock:
    def test_time_is_tick_times_dt(self):
        clock = SimulationClock(0.1)
        for _ in range(30):
            clock.advance()
        assert clock.tick == 30
        assert clock.time_s == pytest.approx(3.0)

    @pytest.mark.parametrize("dt,scale", [(0.0, 1.0), (-0.1, 1.0), (0.1, 0.0)])
    def test_rejects_non_positive(self, dt, scale):
        with pytest.raises(ValueError):
            SimulationClock(dt, time_scale=scale)

    def test_accelerated_never_waits(self):
        clock = SimulationClock(0.1, Pacing.ACCELERATED)
        clock.start()
        clock.advance()
        event = RecordingEvent()
        assert clock.wait_next(event) is False
        assert event.waits == []

    def test_realtime_waits_until_tick_deadline(self):
        fake = FakeTime()
        clock = SimulationClock(0.1, Pacing.REALTIME, monotonic=fake)
        clock.start()
        clock.advance()
        fake.now += 0.03
        event = RecordingEvent()
        clock.wait_next(event)
        assert event.waits == [pytest.approx(0.07)]

    def test_time_scale_shortens_wait(self):
        fake = FakeTime()
        clock = SimulationClock(0.1, Pacing.REALTIME, time_scale=0.5, monotonic=fake)
        clock.start()
        clock.advance()
        event = RecordingEvent()
        clock.wait_next(event)
        assert event.waits == [pytest.approx(0.05)]

    def test_late_tick_does_not_wait(self):
        fake = FakeTime()
        clock = SimulationClock(0.1, Pacing.REALTIME, monotonic=fake)
        clock.start()
        clock.advance()
        fake.now += 0.5
        event = RecordingEvent()
        assert clock.wait_next(event) is False
        assert event.waits == []

    def test_cancel_interrupts_wait(self):
        clock = SimulationClock(0.1, Pacing.REALTIME)
        clock.start()
        clock.advance()
        cancel = threading.Event()
        cancel.set()
        assert clock.wait_next(cancel) is True

    def test_wall_elapsed(self):
        fake = FakeTime()
        clock = SimulationClock(0.1, monotonic=fake)
        assert clock.wall_elapsed_s == 0.0
        clock.start()
        fake.now += 2.5
        assert clock.wall_elapsed_s == pytest.approx(2.5)
