"""EntityRegistry: the authoritative set of simulated drone records.

Drones are created when a scenario is loaded and never removed; a crashed
drone stays in the registry as a terminal record.  State replacement is
atomic per pass (``commit``) so readers on other threads (snapshot builders,
HTTP handlers) never observe a partially updated fleet.
"""

from __future__ import annotations

import threading
from typing import Callable, Iterable

from fleetsim.errors import ResourceExhaustion

from .models import Drone, DroneState, FlightMode


class EntityRegistry:
    """Owns drone records keyed by id, in insertion order."""

    def __init__(self, max_drones: int = 25) -> None:
        self._drones: dict[str, Drone] = {}
        self._lock = threading.Lock()
        self._max_drones = max_drones

    def __len__(self) -> int:
        return len(self._drones)

    def __contains__(self, drone_id: str) -> bool:
        return drone_id in self._drones

    def add(self, drone: Drone) -> None:
        with self._lock:
            if drone.drone_id in self._drones:
                raise ValueError(f"Duplicate drone id: {drone.drone_id}")
            if len(self._drones) >= self._max_drones:
                raise ResourceExhaustion(
                    f"Drone limit reached ({self._max_drones}); cannot add {drone.drone_id}"
                )
            self._drones[drone.drone_id] = drone

    def get(self, drone_id: str) -> Drone | None:
        with self._lock:
            return self._drones.get(drone_id)

    def drones(self) -> list[Drone]:
        """All drones in stable (insertion) order."""
        with self._lock:
            return list(self._drones.values())

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._drones)

    def alive(self) -> list[Drone]:
        return [d for d in self.drones() if d.state.mode is not FlightMode.CRASHED]

    def airborne(self) -> list[Drone]:
        return [d for d in self.drones() if d.state.is_airborne]

    def set_state(self, drone_id: str, state: DroneState) -> None:
        with self._lock:
            self._drones[drone_id].state = state

    def update(self, drone_id: str, fn: Callable[[DroneState], DroneState]) -> DroneState:
        """Replace one drone's state with ``fn(current)`` under the lock."""
        with self._lock:
            drone = self._drones[drone_id]
            drone.state = fn(drone.state)
            return drone.state

    def commit(self, states: Iterable[tuple[str, DroneState]]) -> None:
        """Swap in a full pass of new states atomically."""
        with self._lock:
            for drone_id, state in states:
                self._drones[drone_id].state = state
