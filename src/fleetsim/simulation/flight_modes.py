"""Flight-mode state machine and command validation.

Two kinds of transition exist:

  * command transitions (arm, takeoff, goto, land, return_to_home, custom)
    validated against the current mode by ``evaluate_command()``;
  * physics transitions (takeoff complete, arrived home, touchdown, battery
    depleted, ground impact, ceiling exceeded) applied by the physics engine
    through ``transition()``.

Command rejection is routine control flow, so it is returned as a
``CommandRejected`` value rather than raised.  Nothing is silently ignored:
every command yields exactly one result.

Mode graph:
    idle -> armed -> taking_off -> flying <-> landing -> landed -> armed
    flying/taking_off/landing --battery--> emergency --impact--> crashed
    airborne --impact/ceiling--> crashed (terminal)
    idle/landed <-> maintenance
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from .models import Drone, DroneState, FlightMode, Vec3

if TYPE_CHECKING:
    from fleetsim.geo import GeoReference

    from .environment import Environment


class CommandType(str, Enum):
    ARM = "arm"
    TAKEOFF = "takeoff"
    GOTO = "goto"
    LAND = "land"
    RETURN_TO_HOME = "return_to_home"
    CUSTOM = "custom"


M = FlightMode

# Modes from which each command is accepted.
_COMMAND_SOURCES: dict[str, frozenset[FlightMode]] = {
    CommandType.ARM.value: frozenset({M.IDLE, M.LANDED}),
    CommandType.TAKEOFF.value: frozenset({M.ARMED}),
    CommandType.GOTO.value: frozenset({M.TAKING_OFF, M.FLYING, M.LANDING}),
    CommandType.LAND.value: frozenset({M.TAKING_OFF, M.FLYING}),
    CommandType.RETURN_TO_HOME.value: frozenset({M.TAKING_OFF, M.FLYING, M.LANDING}),
    "disarm": frozenset({M.ARMED, M.LANDED}),
    "hold": frozenset({M.FLYING}),
    "enter_maintenance": frozenset({M.IDLE, M.LANDED}),
    "exit_maintenance": frozenset({M.MAINTENANCE}),
}

CUSTOM_COMMANDS = frozenset({"disarm", "hold", "enter_maintenance", "exit_maintenance"})

# Physics-driven transitions: (mode, trigger) -> new mode.
_PHYSICS_TRANSITIONS: dict[tuple[FlightMode, str], FlightMode] = {
    (M.TAKING_OFF, "takeoff_complete"): M.FLYING,
    (M.FLYING, "arrived_home"): M.LANDING,
    (M.LANDING, "touchdown"): M.LANDED,
    (M.ARMED, "battery_depleted"): M.EMERGENCY,
    (M.TAKING_OFF, "battery_depleted"): M.EMERGENCY,
    (M.FLYING, "battery_depleted"): M.EMERGENCY,
    (M.LANDING, "battery_depleted"): M.EMERGENCY,
    (M.TAKING_OFF, "impact"): M.CRASHED,
    (M.FLYING, "impact"): M.CRASHED,
    (M.EMERGENCY, "impact"): M.CRASHED,
    (M.TAKING_OFF, "ceiling_exceeded"): M.CRASHED,
    (M.FLYING, "ceiling_exceeded"): M.CRASHED,
    (M.LANDING, "ceiling_exceeded"): M.CRASHED,
    (M.EMERGENCY, "ceiling_exceeded"): M.CRASHED,
    (M.TAKING_OFF, "collision"): M.CRASHED,
    (M.FLYING, "collision"): M.CRASHED,
    (M.LANDING, "collision"): M.CRASHED,
    (M.EMERGENCY, "collision"): M.CRASHED,
}


def transition(mode: FlightMode, trigger: str) -> FlightMode | None:
    """Return the mode reached from ``mode`` on a physics trigger, or None."""
    return _PHYSICS_TRANSITIONS.get((mode, trigger))


def allowed_commands(mode: FlightMode) -> list[str]:
    return sorted(name for name, sources in _COMMAND_SOURCES.items() if mode in sources)


@dataclass(frozen=True)
class CommandAccepted:
    command_id: str
    drone_id: str
    state: DroneState

    accepted = True


@dataclass(frozen=True)
class CommandRejected:
    command_id: str
    drone_id: str
    reason: str

    accepted = False


CommandResult = Union[CommandAccepted, CommandRejected]


def _finite(*values: Any) -> bool:
    try:
        return all(math.isfinite(float(v)) for v in values)
    except (TypeError, ValueError):
        return False


def _resolve_point(
    params: dict[str, Any],
    geo: GeoReference,
    default_z: float,
) -> Vec3 | None:
    """Goto destination from lat/lon[/alt] or local x/y[/z] params."""
    if "lat" in params and "lon" in params:
        if not _finite(params["lat"], params["lon"], params.get("alt", 0.0)):
            return None
        x, y, z = geo.to_local(float(params["lat"]), float(params["lon"]),
                               float(params.get("alt", geo.alt)))
        return (x, y, z if "alt" in params else default_z)
    if "x" in params and "y" in params:
        if not _finite(params["x"], params["y"], params.get("z", 0.0)):
            return None
        return (float(params["x"]), float(params["y"]), float(params.get("z", default_z)))
    return None


def evaluate_command(
    drone: Drone,
    command_type: str,
    params: dict[str, Any],
    command_id: str,
    *,
    geo: GeoReference,
    environment: Environment,
    max_altitude_m: float,
) -> CommandResult:
    """Validate a command against the drone's mode and compute the new state."""
    state = drone.state
    mode = state.mode
    name = command_type
    if command_type == CommandType.CUSTOM.value:
        name = str(params.get("name", ""))
        if name not in CUSTOM_COMMANDS:
            return CommandRejected(command_id, drone.drone_id, f"unknown custom command '{name}'")

    def reject(reason: str) -> CommandRejected:
        return CommandRejected(command_id, drone.drone_id, reason)

    if mode is M.CRASHED:
        return reject("drone has crashed")
    if mode is M.EMERGENCY:
        return reject("drone is in emergency descent")
    sources = _COMMAND_SOURCES.get(name)
    if sources is None:
        return reject(f"unsupported command '{command_type}'")
    if mode not in sources:
        allowed = ", ".join(s.value for s in sorted(sources, key=lambda m: m.value))
        return reject(f"'{name}' not valid in mode {mode.value} (valid from: {allowed})")

    x, y, z = state.position
    ground = environment.ground_at(x, y)
    new: DroneState

    if name == CommandType.ARM.value:
        if state.battery_pct <= 0.0:
            return reject("battery depleted")
        if state.motor_health <= 0.0:
            return reject("motors unavailable")
        new = state.evolve(mode=M.ARMED, target=None, returning_home=False)

    elif name == CommandType.TAKEOFF.value:
        altitude = params.get("altitude_m", drone.model.takeoff_altitude_m)
        if not _finite(altitude) or float(altitude) <= 0.0:
            return reject("takeoff altitude must be a positive number")
        target_z = ground + float(altitude)
        if target_z > max_altitude_m:
            return reject(f"takeoff altitude exceeds ceiling {max_altitude_m:.0f} m")
        new = state.evolve(mode=M.TAKING_OFF, target=(x, y, target_z), returning_home=False)

    elif name == CommandType.GOTO.value:
        default_z = state.target[2] if state.target is not None else z
        point = _resolve_point(params, geo, default_z)
        if point is None:
            return reject("goto requires finite lat/lon or x/y parameters")
        if point[2] > max_altitude_m:
            return reject(f"goto altitude exceeds ceiling {max_altitude_m:.0f} m")
        if point[2] <= environment.ground_at(point[0], point[1]):
            return reject("goto altitude is at or below terrain")
        new = state.evolve(mode=M.FLYING, target=point, returning_home=False)

    elif name == CommandType.LAND.value:
        new = state.evolve(mode=M.LANDING, target=(x, y, ground), returning_home=False)

    elif name == CommandType.RETURN_TO_HOME.value:
        hx, hy, hz = drone.home
        cruise_z = max(z, hz + drone.model.takeoff_altitude_m)
        new = state.evolve(mode=M.FLYING, target=(hx, hy, cruise_z), returning_home=True)

    elif name == "hold":
        new = state.evolve(target=(x, y, z), returning_home=False)

    elif name == "disarm":
        new = state.evolve(mode=M.IDLE, target=None)

    elif name == "enter_maintenance":
        new = state.evolve(mode=M.MAINTENANCE, target=None)

    else:  # exit_maintenance
        new = state.evolve(mode=M.IDLE, target=None)

    return CommandAccepted(command_id, drone.drone_id, new.evolve(last_command=name))
