"""Drone data model: flight modes, airframe parameter records, state vectors.

Architecture
------------
Airframes are a *tagged variant*, not a class hierarchy.  ``ModelKind``
names the airframe and ``DroneModel`` is a flat, frozen parameter record;
``MODEL_PRESETS`` maps every kind to its defaults.  The physics and radio
passes iterate drones homogeneously (and in parallel) without dispatching
on type.

``DroneState`` is immutable.  The physics pass returns a new state per drone
and the registry swaps them in atomically after the pass completes, so no
reader ever sees a half-updated fleet.

Frames:
    position / velocity: local ENU metres from the scenario origin
    attitude: roll/pitch/yaw radians, ZYX Euler, +roll right-side-down,
              +pitch nose-up, +yaw clockwise from North
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum

Vec3 = tuple[float, float, float]

ZERO: Vec3 = (0.0, 0.0, 0.0)


class FlightMode(str, Enum):
    """Discrete operational state of a drone."""

    IDLE = "idle"
    ARMED = "armed"
    TAKING_OFF = "taking_off"
    FLYING = "flying"  # also covers hovering (flying with zero setpoint error)
    LANDING = "landing"
    LANDED = "landed"
    EMERGENCY = "emergency"
    MAINTENANCE = "maintenance"
    CRASHED = "crashed"


# Modes in which the airframe is resting on the ground and pinned to terrain.
GROUNDED_MODES = frozenset({
    FlightMode.IDLE, FlightMode.ARMED, FlightMode.LANDED, FlightMode.MAINTENANCE,
})

# Modes under active thrust control.
AIRBORNE_MODES = frozenset({
    FlightMode.TAKING_OFF, FlightMode.FLYING, FlightMode.LANDING, FlightMode.EMERGENCY,
})


class ModelKind(str, Enum):
    """Airframe family."""

    QUADCOPTER = "quadcopter"
    HEXACOPTER = "hexacopter"
    VTOL = "vtol"
    MICRO = "micro"


class SensorKind(str, Enum):
    VIDEO = "video"
    THERMAL = "thermal"
    INFRARED = "infrared"
    SEARCHLIGHT = "searchlight"
    LIDAR = "lidar"


class Capability(str, Enum):
    """Airframe abilities beyond its sensors."""

    SPEAKER = "speaker"
    PAYLOAD_BAY = "payload_bay"  # can drop items
    HIGH_ALTITUDE = "high_altitude"
    LONG_RANGE = "long_range"
    FAST_SPEED = "fast_speed"
    HEAVY_LIFT = "heavy_lift"


@dataclass(frozen=True)
class SensorSpec:
    """A payload sensor and its ground footprint radius."""

    kind: SensorKind
    range_m: float


@dataclass(frozen=True)
class DroneModel:
    """Immutable airframe parameter record."""

    kind: ModelKind
    mass_kg: float
    max_thrust_n: float
    drag_coefficient: float
    frontal_area_m2: float
    battery_capacity_mah: float
    hover_endurance_s: float
    cruise_speed_mps: float
    climb_rate_mps: float
    descent_rate_mps: float
    takeoff_altitude_m: float = 10.0
    sensors: tuple[SensorSpec, ...] = ()
    capabilities: tuple[Capability, ...] = ()

    def sensor_range(self, kind: SensorKind | None = None) -> float:
        """Largest footprint radius among sensors (optionally of one kind)."""
        ranges = [s.range_m for s in self.sensors if kind is None or s.kind == kind]
        return max(ranges, default=0.0)

    def capability_names(self) -> tuple[str, ...]:
        """Sensor kinds followed by airframe capabilities, as reported in telemetry."""
        return tuple(s.kind.value for s in self.sensors) + tuple(c.value for c in self.capabilities)


MODEL_PRESETS: dict[ModelKind, DroneModel] = {
    ModelKind.QUADCOPTER: DroneModel(
        kind=ModelKind.QUADCOPTER,
        mass_kg=2.0,
        max_thrust_n=50.0,
        drag_coefficient=1.0,
        frontal_area_m2=0.10,
        battery_capacity_mah=5000.0,
        hover_endurance_s=25 * 60.0,
        cruise_speed_mps=12.0,
        climb_rate_mps=4.0,
        descent_rate_mps=2.0,
        sensors=(SensorSpec(SensorKind.VIDEO, 40.0),),
        capabilities=(Capability.PAYLOAD_BAY,),
    ),
    ModelKind.HEXACOPTER: DroneModel(
        kind=ModelKind.HEXACOPTER,
        mass_kg=4.5,
        max_thrust_n=110.0,
        drag_coefficient=1.1,
        frontal_area_m2=0.18,
        battery_capacity_mah=10000.0,
        hover_endurance_s=30 * 60.0,
        cruise_speed_mps=10.0,
        climb_rate_mps=3.0,
        descent_rate_mps=1.5,
        sensors=(
            SensorSpec(SensorKind.VIDEO, 50.0),
            SensorSpec(SensorKind.THERMAL, 35.0),
        ),
        capabilities=(Capability.PAYLOAD_BAY, Capability.HEAVY_LIFT, Capability.SPEAKER),
    ),
    ModelKind.VTOL: DroneModel(
        kind=ModelKind.VTOL,
        mass_kg=6.0,
        max_thrust_n=120.0,
        drag_coefficient=0.6,
        frontal_area_m2=0.15,
        battery_capacity_mah=16000.0,
        hover_endurance_s=60 * 60.0,
        cruise_speed_mps=18.0,
        climb_rate_mps=3.0,
        descent_rate_mps=2.0,
        takeoff_altitude_m=20.0,
        sensors=(
            SensorSpec(SensorKind.VIDEO, 60.0),
            SensorSpec(SensorKind.LIDAR, 80.0),
        ),
        capabilities=(Capability.LONG_RANGE, Capability.FAST_SPEED, Capability.HIGH_ALTITUDE),
    ),
    ModelKind.MICRO: DroneModel(
        kind=ModelKind.MICRO,
        mass_kg=0.25,
        max_thrust_n=6.0,
        drag_coefficient=1.2,
        frontal_area_m2=0.02,
        battery_capacity_mah=1700.0,
        hover_endurance_s=12 * 60.0,
        cruise_speed_mps=8.0,
        climb_rate_mps=2.0,
        descent_rate_mps=1.5,
        takeoff_altitude_m=5.0,
        sensors=(SensorSpec(SensorKind.VIDEO, 20.0),),
    ),
}


def build_model(kind: ModelKind, **overrides) -> DroneModel:
    """Return the preset for ``kind`` with non-None overrides applied."""
    base = MODEL_PRESETS[kind]
    changes = {k: v for k, v in overrides.items() if v is not None}
    return replace(base, **changes) if changes else base


@dataclass(frozen=True)
class Attitude:
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0


@dataclass(frozen=True)
class DroneState:
    """Full dynamic state of one drone at a tick boundary."""

    position: Vec3
    velocity: Vec3 = ZERO
    attitude: Attitude = field(default_factory=Attitude)
    battery_pct: float = 100.0
    mode: FlightMode = FlightMode.IDLE
    target: Vec3 | None = None  # guidance setpoint (local ENU)
    returning_home: bool = False
    last_command: str | None = None
    thrust_n: float = 0.0
    motor_health: float = 1.0  # fraction of rated max thrust available
    radio_ok: bool = True

    @property
    def is_airborne(self) -> bool:
        return self.mode in AIRBORNE_MODES

    @property
    def is_crashed(self) -> bool:
        return self.mode is FlightMode.CRASHED

    def evolve(self, **changes) -> DroneState:
        return replace(self, **changes)


@dataclass
class Drone:
    """Registry record: identity, airframe, payload, home and current state."""

    drone_id: str
    model: DroneModel
    state: DroneState
    home: Vec3 = ZERO
    payload_kg: float = 0.0

    @property
    def total_mass_kg(self) -> float:
        return self.model.mass_kg + self.payload_kg


def body_velocity(velocity: Vec3, yaw: float) -> Vec3:
    """Rotate an ENU velocity into the body frame (forward, right, down)."""
    ve, vn, vu = velocity
    forward = ve * math.sin(yaw) + vn * math.cos(yaw)
    right = ve * math.cos(yaw) - vn * math.sin(yaw)
    return (forward, right, -vu)
