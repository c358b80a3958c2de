"""Success and failure criteria, evaluated once per tick after the drain point.

Success criteria combine with ``all`` (default) or ``any``; a scenario with
none can only end TimedOut, Failure or Cancelled.  Detection and coverage
accumulate over the run: once a target has been seen or a cell swept it
stays so.  ``all_crashed`` is always active as a failure condition.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Sequence

import numpy as np

from .models import Drone, FlightMode, SensorKind
from .radio import BRIDGE_ENDPOINT

if TYPE_CHECKING:
    from fleetsim.geo import GeoReference
    from fleetsim.scenarios.schema import ScenarioDefinition

    from .radio import RadioModel


def _footprint(drone: Drone, sensor: SensorKind | None) -> float:
    """Sensor ground radius for an airborne drone, 0 when it cannot observe."""
    if drone.state.mode not in (FlightMode.TAKING_OFF, FlightMode.FLYING, FlightMode.LANDING):
        return 0.0
    return drone.model.sensor_range(sensor)


class CoverageGrid:
    """Boolean sweep map over a rectangle of local metres."""

    def __init__(self, x0: float, y0: float, x1: float, y1: float, cell_size_m: float) -> None:
        cols = max(1, math.ceil((x1 - x0) / cell_size_m))
        rows = max(1, math.ceil((y1 - y0) / cell_size_m))
        xs = x0 + (np.arange(cols) + 0.5) * cell_size_m
        ys = y0 + (np.arange(rows) + 0.5) * cell_size_m
        self.cx, self.cy = np.meshgrid(xs, ys)
        self.covered = np.zeros((rows, cols), dtype=bool)

    def sweep(self, x: float, y: float, radius: float) -> None:
        if radius <= 0.0:
            return
        self.covered |= (self.cx - x) ** 2 + (self.cy - y) ** 2 <= radius * radius

    @property
    def fraction(self) -> float:
        return float(self.covered.mean())


class CriteriaEvaluator:
    def __init__(self, definition: ScenarioDefinition, geo: GeoReference) -> None:
        self._success = list(definition.success)
        self._success_mode = definition.success_mode
        self._failure = list(definition.failure)
        self._geo = geo
        self._detected: dict[int, bool] = {}
        self._coverage: dict[int, CoverageGrid] = {}
        self._targets: dict[int, tuple[float, float, float]] = {}
        self._link_low_since: dict[tuple[int, str], float] = {}

        for n, criterion in enumerate(self._success):
            if criterion.kind == "reach_position":
                p = criterion.position
                self._targets[n] = geo.to_local(p.lat, p.lon, p.alt)
            elif criterion.kind == "target_detected":
                p = criterion.target
                self._targets[n] = geo.to_local(p.lat, p.lon, p.alt)
                self._detected[n] = False
            elif criterion.kind == "area_coverage":
                sw = geo.to_local(criterion.south_west.lat, criterion.south_west.lon)
                ne = geo.to_local(criterion.north_east.lat, criterion.north_east.lon)
                self._coverage[n] = CoverageGrid(sw[0], sw[1], ne[0], ne[1], criterion.cell_size_m)

    @property
    def has_success_criteria(self) -> bool:
        return bool(self._success)

    def coverage_fraction(self, index: int) -> float:
        return self._coverage[index].fraction

    def update(self, drones: Sequence[Drone], radio: RadioModel, sim_time_s: float) -> None:
        """Accumulate detections, coverage and link-loss timers for this tick."""
        for n, criterion in enumerate(self._success):
            if criterion.kind == "target_detected" and not self._detected[n]:
                tx, ty, _ = self._targets[n]
                for drone in drones:
                    if criterion.drone_id is not None and drone.drone_id != criterion.drone_id:
                        continue
                    radius = _footprint(drone, criterion.sensor)
                    x, y, _ = drone.state.position
                    if radius > 0.0 and math.hypot(x - tx, y - ty) <= radius:
                        self._detected[n] = True
                        break
            elif criterion.kind == "area_coverage":
                grid = self._coverage[n]
                for drone in drones:
                    x, y, _ = drone.state.position
                    grid.sweep(x, y, _footprint(drone, criterion.sensor))

        for n, criterion in enumerate(self._failure):
            if criterion.kind != "link_lost":
                continue
            for drone in drones:
                if criterion.drone_id is not None and drone.drone_id != criterion.drone_id:
                    continue
                key = (n, drone.drone_id)
                if drone.state.is_crashed:
                    self._link_low_since.pop(key, None)
                    continue
                quality = radio.link_quality(drone.drone_id, BRIDGE_ENDPOINT)
                if quality < criterion.min_quality:
                    self._link_low_since.setdefault(key, sim_time_s)
                else:
                    self._link_low_since.pop(key, None)

    def failure_reason(self, drones: Sequence[Drone], sim_time_s: float) -> str | None:
        if drones and all(d.state.is_crashed for d in drones):
            return "all drones crashed"
        for n, criterion in enumerate(self._failure):
            if criterion.kind == "any_crashed":
                crashed = [d.drone_id for d in drones if d.state.is_crashed]
                if crashed:
                    return f"drone crashed: {', '.join(crashed)}"
            elif criterion.kind == "battery_below":
                for d in drones:
                    if criterion.drone_id is not None and d.drone_id != criterion.drone_id:
                        continue
                    if not d.state.is_crashed and d.state.battery_pct < criterion.pct:
                        return f"{d.drone_id} battery below {criterion.pct:g}%"
            elif criterion.kind == "link_lost":
                for (index, drone_id), since in self._link_low_since.items():
                    if index == n and sim_time_s - since >= criterion.grace_s:
                        return f"{drone_id} lost its link to the bridge"
        return None

    def success_reason(self, drones: Sequence[Drone]) -> str | None:
        if not self._success:
            return None
        met = [self._is_met(n, criterion, drones) for n, criterion in enumerate(self._success)]
        done = all(met) if self._success_mode == "all" else any(met)
        if not done:
            return None
        names = [c.kind for c, ok in zip(self._success, met) if ok]
        return f"success criteria met: {', '.join(names)}"

    def _is_met(self, n: int, criterion, drones: Sequence[Drone]) -> bool:
        kind = criterion.kind
        if kind == "all_landed":
            alive = [d for d in drones if not d.state.is_crashed]
            return bool(alive) and all(d.state.mode is FlightMode.LANDED for d in alive)
        if kind == "reach_position":
            target = self._targets[n]
            for d in drones:
                if d.drone_id == criterion.drone_id and not d.state.is_crashed:
                    return math.dist(d.state.position, target) <= criterion.radius_m
            return False
        if kind == "target_detected":
            return self._detected[n]
        if kind == "area_coverage":
            return self._coverage[n].fraction >= criterion.threshold
        return False
