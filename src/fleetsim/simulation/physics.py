"""PhysicsEngine: fixed-step rigid-body integration for every drone.

Model
-----
Each drone is a point mass with attitude derived from its thrust vector.
Per tick the total force is

    F = thrust + gravity + drag + wind

with ``drag = -0.5 rho Cd A |v| v`` on the ground-relative velocity and
``wind = 0.5 rho Cd A |w| w`` pushing the airframe along the local wind.

Thrust comes from a cascaded position -> velocity controller for the current
flight mode.  The controller feeds forward the other three forces, so a drone
holding a setpoint at rest in still air commands exactly its weight and the
net force is exactly zero (no drift).  Thrust is limited to the airframe's
rated maximum scaled by motor health, keeps a non-negative vertical
component, and gives vertical authority priority over lateral.

Integration is semi-implicit Euler (velocity first, then position with the
new velocity).  ``integrate()`` is a pure function of (drone, environment,
dt): identical inputs give identical outputs, which regression runs rely on.

Battery drain scales with thrust following momentum theory:

    drain %/s = 100 / hover_endurance * (|T| / T_hover) ** 1.5 * (1 + k * payload)

where ``T_hover`` is the unloaded airframe weight, so an unloaded airframe
hovering in still air empties exactly at its rated endurance.  Payload raises
the thrust needed (and so the draw) and also applies a linear derating ``k``
per kilogram.
"""

from __future__ import annotations

import math
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .environment import Environment
from .flight_modes import transition
from .models import GROUNDED_MODES, Attitude, Drone, DroneState, FlightMode, Vec3, ZERO

GRAVITY = 9.80665  # m/s^2
AIR_DENSITY = 1.225  # kg/m^3, sea level ISA

# Below this height above terrain a drone counts as resting on the ground.
GROUND_EPS_M = 0.01


@dataclass(frozen=True)
class PhysicsConfig:
    gravity: float = GRAVITY
    air_density: float = AIR_DENSITY
    max_dt_s: float = 0.1
    max_altitude_m: float = 500.0
    position_gain: float = 1.0  # 1/s, position error -> desired velocity
    velocity_gain: float = 2.5  # 1/s, velocity error -> desired acceleration
    max_tilt_rad: float = math.radians(35.0)
    arrival_radius_m: float = 0.5
    takeoff_tolerance_m: float = 0.3
    landing_flare_gain: float = 0.5  # descent slows near ground: v <= gain * agl
    min_landing_speed_mps: float = 0.3
    emergency_thrust_fraction: float = 0.75  # of weight, forced descent
    avionics_draw_fraction: float = 0.05  # of hover draw while armed on the ground
    payload_derating_per_kg: float = 0.1
    collision_radius_m: float = 0.0  # 0 disables drone-to-drone collisions
    yaw_speed_threshold_mps: float = 0.5


@dataclass(frozen=True)
class PhysicsOutcome:
    """Result of one drone's integration step."""

    drone_id: str
    state: DroneState
    transitions: tuple[tuple[FlightMode, FlightMode, str], ...] = ()
    drain_pct: float = 0.0
    fault: str | None = None


def _finite(values) -> bool:
    return bool(np.all(np.isfinite(values)))


def _as_vec(a: np.ndarray) -> Vec3:
    return (float(a[0]), float(a[1]), float(a[2]))


class PhysicsEngine:
    """Integrates all drones one fixed step at a time."""

    def __init__(self, config: PhysicsConfig | None = None,
                 executor: Executor | None = None) -> None:
        self.config = config or PhysicsConfig()
        self._executor = executor

    # -- public API ---------------------------------------------------------

    def step(self, drones: Sequence[Drone], environment: Environment,
             dt: float) -> list[PhysicsOutcome]:
        """Advance every drone by ``dt``; results are in input order."""
        if not (0.0 < dt <= self.config.max_dt_s):
            raise ValueError(
                f"dt must be in (0, {self.config.max_dt_s}] seconds, got {dt}"
            )
        for drone in drones:
            if drone.total_mass_kg <= 0.0:
                raise ValueError(f"{drone.drone_id}: mass must be positive")

        if self._executor is not None and len(drones) > 1:
            outcomes = list(self._executor.map(
                lambda d: self.integrate(d, environment, dt), drones,
            ))
        else:
            outcomes = [self.integrate(d, environment, dt) for d in drones]

        if self.config.collision_radius_m > 0.0:
            outcomes = self._resolve_collisions(outcomes)
        return outcomes

    def hover_drain_rate(self, drone: Drone) -> float:
        """Battery %/s for the unloaded airframe at hover thrust."""
        return 100.0 / drone.model.hover_endurance_s

    # -- per-drone integration ---------------------------------------------

    def integrate(self, drone: Drone, environment: Environment, dt: float) -> PhysicsOutcome:
        state = drone.state
        if state.mode is FlightMode.CRASHED:
            return PhysicsOutcome(drone.drone_id, state)

        cfg = self.config
        transitions: list[tuple[FlightMode, FlightMode, str]] = []
        mode = state.mode

        def go(trigger: str) -> None:
            nonlocal mode
            new_mode = transition(mode, trigger)
            if new_mode is not None and new_mode is not mode:
                transitions.append((mode, new_mode, trigger))
                mode = new_mode

        if state.battery_pct <= 0.0:
            go("battery_depleted")

        x, y, z = state.position
        ground = environment.ground_at(x, y) if _finite(state.position) else 0.0
        resting = (z - ground) <= GROUND_EPS_M and state.velocity == ZERO

        if mode in GROUNDED_MODES or (mode is FlightMode.EMERGENCY and resting):
            return self._rest_on_ground(drone, state, mode, ground, dt, transitions)

        mass = drone.total_mass_kg
        pos = np.array(state.position, dtype=float)
        vel = np.array(state.velocity, dtype=float)
        wind = np.array(environment.wind_at(state.position), dtype=float)

        k = 0.5 * cfg.air_density * drone.model.drag_coefficient * drone.model.frontal_area_m2
        drag = -k * np.linalg.norm(vel) * vel
        wind_force = k * np.linalg.norm(wind) * wind
        gravity = np.array([0.0, 0.0, -mass * cfg.gravity])
        max_thrust = drone.model.max_thrust_n * state.motor_health

        if mode is FlightMode.EMERGENCY:
            thrust = np.array([0.0, 0.0, min(cfg.emergency_thrust_fraction * mass * cfg.gravity,
                                             max_thrust)])
        else:
            a_des = self._guidance(drone, state, mode, pos, vel, ground)
            thrust = mass * a_des - (gravity + drag + wind_force)
            thrust = self._limit_thrust(thrust, max_thrust)

        force = thrust + gravity + drag + wind_force
        new_vel = vel + (force / mass) * dt
        new_pos = pos + new_vel * dt

        if not (_finite(new_pos) and _finite(new_vel) and _finite(thrust)):
            return self._clamp_fault(drone, state, environment, transitions)

        thrust_n = float(np.linalg.norm(thrust))
        drain = self._drain(drone, thrust_n, dt)
        battery = max(0.0, state.battery_pct - drain)

        target = state.target
        returning = state.returning_home
        nx, ny, nz = _as_vec(new_pos)
        new_ground = environment.ground_at(nx, ny)
        was_airborne = not resting

        if nz > cfg.max_altitude_m:
            go("ceiling_exceeded")
            new_vel = np.zeros(3)
        elif nz <= new_ground:
            new_pos[2] = new_ground
            if mode is FlightMode.LANDING:
                go("touchdown")
                target = None
            elif was_airborne:
                go("impact")
            new_vel = np.zeros(3)
        elif mode is FlightMode.TAKING_OFF and target is not None:
            if abs(nz - target[2]) <= cfg.takeoff_tolerance_m:
                go("takeoff_complete")
        elif mode is FlightMode.FLYING and returning:
            hx, hy, _ = drone.home
            if math.hypot(nx - hx, ny - hy) <= cfg.arrival_radius_m:
                go("arrived_home")
                target = (hx, hy, environment.ground_at(hx, hy))
                returning = False

        if battery <= 0.0:
            go("battery_depleted")

        if mode is FlightMode.CRASHED:
            thrust = np.zeros(3)
            thrust_n = 0.0
            target = None
        new_state = state.evolve(
            position=_as_vec(new_pos),
            velocity=_as_vec(new_vel),
            attitude=self._attitude(state.attitude.yaw, new_vel, thrust),
            battery_pct=battery,
            mode=mode,
            target=target,
            returning_home=returning,
            thrust_n=thrust_n,
        )
        return PhysicsOutcome(drone.drone_id, new_state, tuple(transitions), drain)

    # -- helpers ------------------------------------------------------------

    def _guidance(self, drone: Drone, state: DroneState, mode: FlightMode,
                  pos: np.ndarray, vel: np.ndarray, ground: float) -> np.ndarray:
        """Desired acceleration from the cascaded position/velocity loops."""
        cfg = self.config
        model = drone.model
        target = np.array(state.target if state.target is not None else _as_vec(pos))

        err = target - pos
        v_des = cfg.position_gain * err
        horiz = float(np.hypot(v_des[0], v_des[1]))
        if horiz > model.cruise_speed_mps:
            v_des[0:2] *= model.cruise_speed_mps / horiz
        v_des[2] = min(max(v_des[2], -model.descent_rate_mps), model.climb_rate_mps)

        if mode is FlightMode.LANDING:
            agl = max(0.0, float(pos[2]) - ground)
            sink = min(model.descent_rate_mps,
                       max(cfg.min_landing_speed_mps, cfg.landing_flare_gain * agl))
            v_des[2] = -sink

        return cfg.velocity_gain * (v_des - vel)

    def _limit_thrust(self, thrust: np.ndarray, max_thrust: float) -> np.ndarray:
        cfg = self.config
        tz = max(0.0, float(thrust[2]))
        txy = thrust[0:2].copy()
        h = float(np.hypot(txy[0], txy[1]))

        tilt_cap = math.tan(cfg.max_tilt_rad) * tz
        if h > tilt_cap:
            txy = txy * (tilt_cap / h) if h > 0.0 else txy
            h = tilt_cap

        if tz >= max_thrust:
            return np.array([0.0, 0.0, max_thrust])
        if tz * tz + h * h > max_thrust * max_thrust:
            h_cap = math.sqrt(max_thrust * max_thrust - tz * tz)
            txy = txy * (h_cap / h)
        return np.array([txy[0], txy[1], tz])

    def _drain(self, drone: Drone, thrust_n: float, dt: float) -> float:
        hover_thrust = drone.model.mass_kg * self.config.gravity
        ratio = thrust_n / hover_thrust
        derate = 1.0 + self.config.payload_derating_per_kg * drone.payload_kg
        return self.hover_drain_rate(drone) * ratio ** 1.5 * derate * dt

    def _attitude(self, yaw: float, vel: np.ndarray, thrust: np.ndarray) -> Attitude:
        if float(np.hypot(vel[0], vel[1])) > self.config.yaw_speed_threshold_mps:
            yaw = math.atan2(float(vel[0]), float(vel[1]))
        tz = float(thrust[2])
        if tz <= 0.0:
            return Attitude(0.0, 0.0, yaw)
        forward = float(thrust[0]) * math.sin(yaw) + float(thrust[1]) * math.cos(yaw)
        right = float(thrust[0]) * math.cos(yaw) - float(thrust[1]) * math.sin(yaw)
        # Accelerating forward tilts the nose down (negative pitch); thrust
        # leaning right means right side down (positive roll).
        return Attitude(roll=math.atan2(right, tz), pitch=-math.atan2(forward, tz), yaw=yaw)

    def _rest_on_ground(self, drone: Drone, state: DroneState, mode: FlightMode,
                        ground: float, dt: float,
                        transitions: list) -> PhysicsOutcome:
        drain = 0.0
        if mode is FlightMode.ARMED:
            drain = (self.hover_drain_rate(drone) * self.config.avionics_draw_fraction * dt)
        battery = max(0.0, state.battery_pct - drain)
        if mode is FlightMode.ARMED and battery <= 0.0:
            new_mode = transition(mode, "battery_depleted")
            transitions.append((mode, new_mode, "battery_depleted"))
            mode = new_mode
        x, y, _ = state.position
        new_state = state.evolve(
            position=(x, y, ground),
            velocity=ZERO,
            attitude=Attitude(0.0, 0.0, state.attitude.yaw),
            battery_pct=battery,
            mode=mode,
            thrust_n=0.0,
        )
        return PhysicsOutcome(drone.drone_id, new_state, tuple(transitions), drain)

    def _clamp_fault(self, drone: Drone, state: DroneState, environment: Environment,
                     transitions: list) -> PhysicsOutcome:
        """Recover from a non-finite step by reverting to the last finite state."""
        if _finite(state.position):
            position = state.position
        else:
            hx, hy, _ = drone.home
            position = (hx, hy, environment.ground_at(hx, hy))
        battery = state.battery_pct if math.isfinite(state.battery_pct) else 0.0
        clamped = state.evolve(
            position=position,
            velocity=ZERO,
            attitude=Attitude(0.0, 0.0, state.attitude.yaw
                              if math.isfinite(state.attitude.yaw) else 0.0),
            battery_pct=min(100.0, max(0.0, battery)),
            thrust_n=0.0,
        )
        return PhysicsOutcome(
            drone.drone_id, clamped, tuple(transitions),
            fault="non-finite state after integration; reverted to last finite state",
        )

    def _resolve_collisions(self, outcomes: list[PhysicsOutcome]) -> list[PhysicsOutcome]:
        radius = self.config.collision_radius_m
        hit: set[int] = set()
        for i, a in enumerate(outcomes):
            if not a.state.is_airborne:
                continue
            for j in range(i + 1, len(outcomes)):
                b = outcomes[j]
                if not b.state.is_airborne:
                    continue
                if math.dist(a.state.position, b.state.position) <= radius:
                    hit.update((i, j))
        if not hit:
            return outcomes
        resolved = []
        for i, outcome in enumerate(outcomes):
            if i not in hit:
                resolved.append(outcome)
                continue
            state = outcome.state
            crashed = transition(state.mode, "collision")
            resolved.append(PhysicsOutcome(
                outcome.drone_id,
                state.evolve(mode=crashed, velocity=ZERO, target=None, thrust_n=0.0),
                outcome.transitions + ((state.mode, crashed, "collision"),),
                outcome.drain_pct,
                outcome.fault,
            ))
        return resolved
