"""Pydantic models for scenario definitions, commands, telemetry and results."""

from __future__ import annotations

import math
import time
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fleetsim.simulation.clock import Pacing
from fleetsim.simulation.environment import PrecipitationKind
from fleetsim.simulation.flight_modes import CUSTOM_COMMANDS, CommandType
from fleetsim.simulation.models import FlightMode, ModelKind, SensorKind

SCHEMA_VERSION = 1


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class GeoPoint(BaseModel):
    """WGS84 position; ``alt`` is metres above the scenario datum."""

    model_config = ConfigDict(extra="forbid")

    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)
    alt: float = 0.0


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------

class ModelOverrides(BaseModel):
    """Per-drone replacements for preset airframe parameters."""

    model_config = ConfigDict(extra="forbid")

    mass_kg: float | None = Field(None, gt=0)
    max_thrust_n: float | None = Field(None, gt=0)
    drag_coefficient: float | None = Field(None, ge=0)
    frontal_area_m2: float | None = Field(None, ge=0)
    battery_capacity_mah: float | None = Field(None, gt=0)
    hover_endurance_s: float | None = Field(None, gt=0)
    cruise_speed_mps: float | None = Field(None, gt=0)
    climb_rate_mps: float | None = Field(None, gt=0)
    descent_rate_mps: float | None = Field(None, gt=0)
    takeoff_altitude_m: float | None = Field(None, gt=0)


INITIAL_MODES = (
    FlightMode.IDLE, FlightMode.ARMED, FlightMode.FLYING, FlightMode.LANDED, FlightMode.MAINTENANCE,
)


class DroneSpec(BaseModel):
    """One roster entry: identity, airframe and initial state."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    model: ModelKind = ModelKind.QUADCOPTER
    position: GeoPoint
    home: GeoPoint | None = None  # defaults to the ground below ``position``
    battery_pct: float = Field(100.0, ge=0, le=100)
    initial_mode: FlightMode = FlightMode.IDLE
    payload_kg: float = Field(0.0, ge=0)
    overrides: ModelOverrides = Field(default_factory=ModelOverrides)

    @field_validator("initial_mode")
    @classmethod
    def _startable_mode(cls, v: FlightMode) -> FlightMode:
        if v not in INITIAL_MODES:
            allowed = ", ".join(m.value for m in INITIAL_MODES)
            raise ValueError(f"initial_mode must be one of: {allowed}")
        return v


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

class WindSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    speed_mps: float = Field(0.0, ge=0)
    direction_deg: float = 0.0  # direction the wind blows from, clockwise from North
    shear_exponent: float = Field(0.0, ge=0)


class PrecipitationSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: PrecipitationKind = PrecipitationKind.NONE
    intensity_mm_h: float = Field(0.0, ge=0)


class TerrainSpec(BaseModel):
    """Flat terrain, or an elevation grid anchored at its south-west cell."""

    model_config = ConfigDict(extra="forbid")

    elevation_m: float = 0.0
    elevations: list[list[float]] | None = None  # rows south to north, columns west to east
    south_west: GeoPoint | None = None
    cell_size_m: float = Field(10.0, gt=0)

    @model_validator(mode="after")
    def _check_grid(self) -> TerrainSpec:
        if self.elevations is None:
            return self
        if not self.elevations or not self.elevations[0]:
            raise ValueError("terrain.elevations must be a non-empty grid")
        width = len(self.elevations[0])
        if any(len(row) != width for row in self.elevations):
            raise ValueError("terrain.elevations rows must all have the same length")
        if any(not math.isfinite(v) for row in self.elevations for v in row):
            raise ValueError("terrain.elevations must be finite")
        if self.south_west is None:
            raise ValueError("terrain.south_west is required with an elevation grid")
        return self


class InterferenceSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    position: GeoPoint
    strength: float = Field(ge=0)
    radius_m: float = Field(100.0, gt=0)


class EnvironmentSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wind: WindSpec = Field(default_factory=WindSpec)
    precipitation: PrecipitationSpec = Field(default_factory=PrecipitationSpec)
    terrain: TerrainSpec = Field(default_factory=TerrainSpec)
    interference: list[InterferenceSpec] = Field(default_factory=list)
    noise_floor: float = Field(0.01, ge=0, lt=1)


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------

class EventKind(str, Enum):
    """Scripted mutations applied at a tick boundary."""

    SET_WIND = "set_wind"
    SET_PRECIPITATION = "set_precipitation"
    ADD_INTERFERENCE = "add_interference"
    REMOVE_INTERFERENCE = "remove_interference"
    DRONE_FAULT = "drone_fault"
    RECHARGE = "recharge"
    COMMAND = "command"


ENVIRONMENT_EVENTS = frozenset({
    EventKind.SET_WIND, EventKind.SET_PRECIPITATION,
    EventKind.ADD_INTERFERENCE, EventKind.REMOVE_INTERFERENCE,
})

DRONE_FAULTS = ("battery_failure", "motor_failure", "radio_failure")


def _number(params: dict[str, Any], key: str, minimum: float | None = None) -> None:
    value = params.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"params.{key} must be a finite number")
    if minimum is not None and value < minimum:
        raise ValueError(f"params.{key} must be >= {minimum}")


class ScenarioEvent(BaseModel):
    """A single time-tagged event in the scenario timeline."""

    model_config = ConfigDict(extra="forbid")

    at_s: float = Field(ge=0)  # seconds from scenario start
    kind: EventKind
    drone_id: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_params(self) -> ScenarioEvent:
        p = self.params
        kind = self.kind
        if kind is EventKind.SET_WIND:
            _number(p, "speed_mps", 0.0)
            if "direction_deg" in p:
                _number(p, "direction_deg")
            if "shear_exponent" in p:
                _number(p, "shear_exponent", 0.0)
        elif kind is EventKind.SET_PRECIPITATION:
            PrecipitationKind(p.get("kind", "rain"))
            _number(p, "intensity_mm_h", 0.0)
        elif kind is EventKind.ADD_INTERFERENCE:
            if not p.get("id"):
                raise ValueError("add_interference requires params.id")
            _number(p, "lat")
            _number(p, "lon")
            if not (-90.0 <= p["lat"] <= 90.0 and -180.0 <= p["lon"] <= 180.0):
                raise ValueError("add_interference lat/lon out of range")
            if "alt" in p:
                _number(p, "alt")
            _number(p, "strength", 0.0)
            if "radius_m" in p:
                _number(p, "radius_m", 0.0)
        elif kind is EventKind.REMOVE_INTERFERENCE:
            if not p.get("id"):
                raise ValueError("remove_interference requires params.id")
        else:
            if not self.drone_id:
                raise ValueError(f"{kind.value} requires drone_id")
            if kind is EventKind.DRONE_FAULT:
                if p.get("fault") not in DRONE_FAULTS:
                    raise ValueError(f"params.fault must be one of: {', '.join(DRONE_FAULTS)}")
                if "health" in p:
                    _number(p, "health", 0.0)
                if "battery_pct" in p:
                    _number(p, "battery_pct", 0.0)
            elif kind is EventKind.RECHARGE:
                if "battery_pct" in p:
                    _number(p, "battery_pct", 0.0)
            elif kind is EventKind.COMMAND:
                command = p.get("command")
                if command not in {c.value for c in CommandType}:
                    raise ValueError(f"params.command is not a known command: {command!r}")
                if not isinstance(p.get("params", {}), dict):
                    raise ValueError("params.params must be a mapping")
                if command == CommandType.CUSTOM.value and p.get("params", {}).get("name") not in CUSTOM_COMMANDS:
                    raise ValueError(
                        f"custom command name must be one of: {', '.join(sorted(CUSTOM_COMMANDS))}")
        return self


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------

class AllLandedCriterion(BaseModel):
    kind: Literal["all_landed"] = "all_landed"


class ReachPositionCriterion(BaseModel):
    kind: Literal["reach_position"] = "reach_position"
    drone_id: str
    position: GeoPoint
    radius_m: float = Field(5.0, gt=0)


class TargetDetectedCriterion(BaseModel):
    kind: Literal["target_detected"] = "target_detected"
    target: GeoPoint
    sensor: SensorKind | None = None
    drone_id: str | None = None


class AreaCoverageCriterion(BaseModel):
    kind: Literal["area_coverage"] = "area_coverage"
    south_west: GeoPoint
    north_east: GeoPoint
    cell_size_m: float = Field(10.0, gt=0)
    threshold: float = Field(0.9, gt=0, le=1)
    sensor: SensorKind | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> AreaCoverageCriterion:
        if self.north_east.lat <= self.south_west.lat or self.north_east.lon <= self.south_west.lon:
            raise ValueError("area_coverage north_east must lie north-east of south_west")
        return self


SuccessCriterion = Annotated[
    Union[AllLandedCriterion, ReachPositionCriterion, TargetDetectedCriterion, AreaCoverageCriterion],
    Field(discriminator="kind"),
]


class AllCrashedCriterion(BaseModel):
    kind: Literal["all_crashed"] = "all_crashed"


class AnyCrashedCriterion(BaseModel):
    kind: Literal["any_crashed"] = "any_crashed"


class BatteryBelowCriterion(BaseModel):
    kind: Literal["battery_below"] = "battery_below"
    pct: float = Field(ge=0, le=100)
    drone_id: str | None = None


class LinkLostCriterion(BaseModel):
    kind: Literal["link_lost"] = "link_lost"
    drone_id: str | None = None
    min_quality: float = Field(0.2, ge=0, le=1)
    grace_s: float = Field(5.0, ge=0)


FailureCriterion = Annotated[
    Union[AllCrashedCriterion, AnyCrashedCriterion, BatteryBelowCriterion, LinkLostCriterion],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Engine tuning
# ---------------------------------------------------------------------------

class RadioSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_range_m: float = Field(2000.0, gt=1)
    reference_loss_db: float = 40.0
    loss_exponent: float = Field(2.0, gt=0)
    precipitation_factor: float = Field(0.02, ge=0)
    interference_factor: float = Field(1.0, ge=0)
    base_latency_s: float = Field(0.005, ge=0)
    jitter_max_s: float = Field(0.01, ge=0)
    ordering: Literal["fifo", "reorder"] = "fifo"
    heartbeat_interval_s: float = Field(1.0, gt=0)
    command_delivery: Literal["direct", "radio"] = "direct"


class PhysicsSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    collision_radius_m: float = Field(0.0, ge=0)
    payload_derating_per_kg: float = Field(0.1, ge=0)


class ScenarioDefinition(BaseModel):
    """A complete, versioned scenario definition."""

    model_config = ConfigDict(extra="forbid")

    schema_version: int = SCHEMA_VERSION
    name: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    description: str = ""
    seed: int = Field(0, ge=0)
    dt_s: float = Field(0.1, gt=0)
    max_duration_s: float = Field(gt=0)
    pacing: Pacing = Pacing.ACCELERATED
    time_scale: float = Field(1.0, gt=0)  # wall seconds per simulated second (realtime)
    origin: GeoPoint
    ground_station: GeoPoint | None = None  # defaults to origin
    drones: list[DroneSpec] = Field(min_length=1)
    environment: EnvironmentSpec = Field(default_factory=EnvironmentSpec)
    events: list[ScenarioEvent] = Field(default_factory=list)
    success: list[SuccessCriterion] = Field(default_factory=list)
    success_mode: Literal["all", "any"] = "all"
    failure: list[FailureCriterion] = Field(default_factory=list)
    radio: RadioSpec = Field(default_factory=RadioSpec)
    physics: PhysicsSpec = Field(default_factory=PhysicsSpec)
    telemetry_decimation: int = Field(1, ge=1)

    @field_validator("schema_version")
    @classmethod
    def _supported_version(cls, v: int) -> int:
        if v != SCHEMA_VERSION:
            raise ValueError(f"unsupported schema_version {v} (expected {SCHEMA_VERSION})")
        return v

    @model_validator(mode="after")
    def _check_references(self) -> ScenarioDefinition:
        ids = [d.id for d in self.drones]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate drone ids: {', '.join(duplicates)}")
        known = set(ids)
        for n, event in enumerate(self.events):
            if event.drone_id is not None and event.drone_id not in known:
                raise ValueError(f"events[{n}] references unknown drone '{event.drone_id}'")
        for criterion in [*self.success, *self.failure]:
            drone_id = getattr(criterion, "drone_id", None)
            if drone_id is not None and drone_id not in known:
                raise ValueError(f"{criterion.kind} criterion references unknown drone '{drone_id}'")
        # Stable sort keeps file order among events sharing a timestamp.
        self.events = sorted(self.events, key=lambda e: e.at_s)
        return self


# ---------------------------------------------------------------------------
# Bridge messages
# ---------------------------------------------------------------------------

class CommandMessage(BaseModel):
    """A command accepted from the external platform."""

    command_id: str = Field(default_factory=_new_id)
    drone_id: str = Field(min_length=1)
    command: CommandType
    params: dict[str, Any] = Field(default_factory=dict)
    issued_at: float = Field(default_factory=time.time)  # epoch seconds

    @model_validator(mode="after")
    def _check_custom(self) -> CommandMessage:
        if self.command is CommandType.CUSTOM and self.params.get("name") not in CUSTOM_COMMANDS:
            raise ValueError(f"custom command name must be one of: {', '.join(sorted(CUSTOM_COMMANDS))}")
        return self


class CommandStatus(BaseModel):
    """Lifecycle of a submitted command as seen through the Bridge."""

    command_id: str
    drone_id: str
    command: str
    status: Literal["queued", "accepted", "rejected"] = "queued"
    reason: str | None = None
    tick: int | None = None
    sim_time_s: float | None = None


class DroneTelemetry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    model: ModelKind
    lat: float
    lon: float
    alt: float
    relative_alt: float  # above terrain
    velocity: tuple[float, float, float]  # ENU m/s
    body_velocity: tuple[float, float, float]  # forward, right, down m/s
    roll: float
    pitch: float
    yaw: float
    battery_pct: float
    mode: FlightMode
    last_command: str | None = None
    link_quality: float | None = None  # to the bridge; None once crashed
    online: bool = True  # radio up and not crashed
    capabilities: tuple[str, ...] = ()


class LinkTelemetry(BaseModel):
    model_config = ConfigDict(frozen=True)

    a: str
    b: str
    distance_m: float
    attenuation_db: float
    latency_s: float
    loss_probability: float
    quality: float


class TelemetrySnapshot(BaseModel):
    """Immutable per-tick view of the fleet. Contains no wall-clock fields."""

    model_config = ConfigDict(frozen=True)

    tick: int
    sim_time_s: float
    drones: list[DroneTelemetry]
    links: list[LinkTelemetry] = Field(default_factory=list)
    events: list[dict[str, Any]] = Field(default_factory=list)  # since the previous snapshot
    counters: dict[str, int] = Field(default_factory=dict)


class ScenarioOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ScenarioResult(BaseModel):
    """Terminal record of one run; archived as JSON and never modified."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=_new_id)
    scenario_name: str
    seed: int
    outcome: ScenarioOutcome
    reason: str = ""
    ticks: int = 0
    sim_time_s: float = 0.0
    wall_time_s: float = 0.0
    started_at: float = Field(default_factory=time.time)
    metrics: dict[str, Any] = Field(default_factory=dict)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    fatal_cause: str | None = None
    final_drones: list[DroneTelemetry] = Field(default_factory=list)
