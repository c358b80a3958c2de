"""Metric events, the structured error log, and per-run aggregation."""

from __future__ import annotations

import math
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from .models import Drone


@dataclass(frozen=True)
class MetricEvent:
    """A discrete occurrence worth reporting in telemetry deltas.

    Kinds: packet_lost, mode_transition, command_accepted, command_rejected,
    integration_fault, scripted_event, crash.
    """

    kind: str
    sim_time_s: float
    drone_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ErrorRecord:
    """Entry in a scenario's structured error log."""

    tick: int
    sim_time_s: float
    severity: str  # "warning" or "fatal"
    kind: str
    message: str
    drone_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetricsAggregator:
    """Collects counters, pending event deltas and fleet statistics for a run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._pending: list[MetricEvent] = []
        self._errors: list[ErrorRecord] = []
        self._distance: dict[str, float] = {}
        self._last_position: dict[str, tuple[float, float, float]] = {}
        self._min_battery: dict[str, float] = {}
        self._max_altitude: dict[str, float] = {}

    def record(self, event: MetricEvent) -> None:
        with self._lock:
            self._counters[event.kind] += 1
            self._pending.append(event)

    def count(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counters[name] += n

    def drain_events(self) -> list[MetricEvent]:
        """Return and clear the events accumulated since the last drain."""
        with self._lock:
            events, self._pending = self._pending, []
        return events

    def add_error(self, record: ErrorRecord) -> None:
        with self._lock:
            self._errors.append(record)

    @property
    def errors(self) -> list[ErrorRecord]:
        with self._lock:
            return list(self._errors)

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counters.items()))

    def observe_fleet(self, drones: Iterable[Drone]) -> None:
        """Update per-drone statistics from committed post-tick states."""
        with self._lock:
            for drone in drones:
                state = drone.state
                pos = state.position
                if not all(math.isfinite(v) for v in pos):
                    continue
                last = self._last_position.get(drone.drone_id)
                if last is not None:
                    self._distance[drone.drone_id] = (
                        self._distance.get(drone.drone_id, 0.0) + math.dist(last, pos)
                    )
                self._last_position[drone.drone_id] = pos
                self._min_battery[drone.drone_id] = min(
                    self._min_battery.get(drone.drone_id, 100.0), state.battery_pct,
                )
                self._max_altitude[drone.drone_id] = max(
                    self._max_altitude.get(drone.drone_id, pos[2]), pos[2],
                )

    def summary(self) -> dict[str, Any]:
        with self._lock:
            sent = self._counters["messages_sent"]
            lost = self._counters["packet_lost"]
            return {
                "counters": dict(sorted(self._counters.items())),
                "packet_loss_ratio": (lost / sent) if sent else 0.0,
                "distance_m": {k: round(v, 3) for k, v in self._distance.items()},
                "min_battery_pct": {k: round(v, 3) for k, v in self._min_battery.items()},
                "max_altitude_m": {k: round(v, 3) for k, v in self._max_altitude.items()},
                "errors": len(self._errors),
            }
