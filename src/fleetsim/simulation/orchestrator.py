"""ScenarioOrchestrator: the fixed-timestep loop driving one scenario run.

Tick structure
--------------
Each tick runs these phases strictly in order; the orchestrator thread is
the only sequential driver and every parallel phase joins before the next:

  1. Physics pass over all drones (parallel), barrier, atomic commit.
  2. Radio pass: links re-evaluated from post-physics positions (parallel
     over pairs), per-tick traffic sent, due deliveries moved to inboxes.
  3. Drain point: radio-delivered commands, then commands queued on the
     Bridge in submission order, applied one at a time.
  4. Clock advances.
  5. Scripted events due by the new simulated time are applied.
  6. Termination: fatal > cancelled > failure > success > timed out.
  7. Snapshot published (every ``telemetry_decimation`` ticks and always on
     the final tick).

Nothing outside phase 3 reads the command queue, so a command submitted
while tick N runs becomes visible at tick N+1's drain point at the earliest.

Faults
------
A drone whose integration produced a non-finite state is reverted to its
last finite state with zero velocity.  The first occurrence is logged and
recorded in the structured error log; a second one for the same drone within
``fault_window_s`` of simulated time is fatal and ends the run as Failure.
"""

from __future__ import annotations

import math
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from loguru import logger

from fleetsim.config import EngineLimits
from fleetsim.errors import ConfigurationError, FatalSimulationError, IntegrationFault, ResourceExhaustion
from fleetsim.geo import GeoReference
from fleetsim.scenarios.schema import (
    ENVIRONMENT_EVENTS,
    CommandMessage,
    CommandStatus,
    DroneTelemetry,
    EventKind,
    LinkTelemetry,
    ScenarioDefinition,
    ScenarioEvent,
    ScenarioOutcome,
    ScenarioResult,
    TelemetrySnapshot,
)

from .bridge import TelemetryBridge
from .clock import SimulationClock
from .criteria import CriteriaEvaluator
from .environment import Environment
from .flight_modes import CommandAccepted, CommandRejected, evaluate_command
from .metrics import ErrorRecord, MetricEvent, MetricsAggregator
from .models import GROUNDED_MODES, Drone, DroneState, FlightMode, build_model, body_velocity
from .physics import PhysicsConfig, PhysicsEngine, PhysicsOutcome
from .radio import BRIDGE_ENDPOINT, Endpoint, RadioConfig, RadioModel
from .registry import EntityRegistry


def link_count(drone_count: int) -> int:
    """Unordered links among the drones plus the ground station."""
    n = drone_count + 1
    return n * (n - 1) // 2


def check_limits(definition: ScenarioDefinition, limits: EngineLimits) -> None:
    """Raise ResourceExhaustion or ConfigurationError before any state is built."""
    count = len(definition.drones)
    if count > limits.max_drones:
        raise ResourceExhaustion(
            f"Scenario '{definition.name}' has {count} drones; the engine limit is {limits.max_drones}"
        )
    links = link_count(count)
    if links > limits.max_links:
        raise ResourceExhaustion(
            f"Scenario '{definition.name}' needs {links} radio links; the engine limit is {limits.max_links}"
        )
    if definition.dt_s > limits.max_dt_s:
        raise ConfigurationError(
            f"Scenario '{definition.name}' is inconsistent",
            [f"dt_s {definition.dt_s} exceeds the maximum step {limits.max_dt_s}"],
        )


def aborted_result(definition: ScenarioDefinition, cause: str) -> ScenarioResult:
    """Failure record for a run that could not start."""
    return ScenarioResult(
        scenario_name=definition.name,
        seed=definition.seed,
        outcome=ScenarioOutcome.FAILURE,
        reason=cause,
        fatal_cause=cause,
    )


class ScenarioOrchestrator:
    """Runs one scenario to a terminal result.

    Dependencies are injected: the Bridge for outward traffic, the engine
    limits, and optionally an executor shared with other runs.  Without an
    executor one is created (``limits.physics_workers`` threads, none when 0)
    and shut down by ``close()``.
    """

    def __init__(
        self,
        definition: ScenarioDefinition,
        bridge: TelemetryBridge | None = None,
        limits: EngineLimits | None = None,
        *,
        executor: ThreadPoolExecutor | None = None,
        run_id: str | None = None,
    ) -> None:
        self.limits = limits or EngineLimits()
        check_limits(definition, self.limits)

        self.definition = definition
        self.bridge = bridge or TelemetryBridge()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._log = logger.bind(scenario=definition.name, run_id=self.run_id)

        self._owns_executor = executor is None and self.limits.physics_workers > 0
        if self._owns_executor:
            executor = ThreadPoolExecutor(
                max_workers=self.limits.physics_workers, thread_name_prefix="fleetsim",
            )
        self._executor = executor

        self.geo = GeoReference(definition.origin.lat, definition.origin.lon, definition.origin.alt)
        self.environment = Environment.from_spec(definition.environment, self.geo)
        self.metrics = MetricsAggregator()
        self.registry = EntityRegistry(self.limits.max_drones)
        self._build_roster()

        station = definition.ground_station or definition.origin
        self.ground_station = self.geo.to_local(station.lat, station.lon, station.alt)

        self.physics = PhysicsEngine(
            PhysicsConfig(
                max_dt_s=self.limits.max_dt_s,
                max_altitude_m=self.limits.max_altitude_m,
                collision_radius_m=definition.physics.collision_radius_m,
                payload_derating_per_kg=definition.physics.payload_derating_per_kg,
            ),
            executor=self._executor,
        )
        radio = definition.radio
        self.command_delivery = radio.command_delivery
        self.radio = RadioModel(
            RadioConfig(
                max_range_m=radio.max_range_m,
                reference_loss_db=radio.reference_loss_db,
                loss_exponent=radio.loss_exponent,
                precipitation_factor=radio.precipitation_factor,
                interference_factor=radio.interference_factor,
                base_latency_s=radio.base_latency_s,
                jitter_max_s=radio.jitter_max_s,
                ordering=radio.ordering,
                heartbeat_interval_s=radio.heartbeat_interval_s,
            ),
            seed=definition.seed,
            metrics=self.metrics,
            executor=self._executor,
            max_links=self.limits.max_links,
        )
        self.clock = SimulationClock(definition.dt_s, definition.pacing, definition.time_scale)
        self.criteria = CriteriaEvaluator(definition, self.geo)

        self._max_ticks = max(1, math.ceil(definition.max_duration_s / definition.dt_s - 1e-9))
        self._events: deque[tuple[int, ScenarioEvent]] = deque(enumerate(definition.events))
        self._next_heartbeat_s = 0.0
        self._fault_times: dict[str, float] = {}
        self._fatal: str | None = None
        self._started = False
        self._wall_start = 0.0
        self._started_at = 0.0
        self._outcome: tuple[ScenarioOutcome, str] | None = None
        self._result: ScenarioResult | None = None

    # -- construction -------------------------------------------------------

    def _build_roster(self) -> None:
        problems = []
        for spec in self.definition.drones:
            model = build_model(spec.model, **spec.overrides.model_dump())
            if spec.payload_kg > 0.0 and model.max_thrust_n <= (model.mass_kg + spec.payload_kg) * 9.80665:
                problems.append(f"drone '{spec.id}': payload {spec.payload_kg} kg exceeds lift capacity")
            x, y, z = self.geo.to_local(spec.position.lat, spec.position.lon, spec.position.alt)
            ground = self.environment.ground_at(x, y)
            mode = spec.initial_mode
            target = None
            if mode in GROUNDED_MODES:
                z = ground
            elif z <= ground:
                problems.append(f"drone '{spec.id}': initial mode {mode.value} requires altitude above terrain")
            elif z > self.limits.max_altitude_m:
                problems.append(f"drone '{spec.id}': initial altitude exceeds ceiling {self.limits.max_altitude_m:.0f} m")
            else:
                target = (x, y, z)
            if spec.home is not None:
                hx, hy, _ = self.geo.to_local(spec.home.lat, spec.home.lon, spec.home.alt)
            else:
                hx, hy = x, y
            home = (hx, hy, self.environment.ground_at(hx, hy))
            state = DroneState(position=(x, y, z), battery_pct=spec.battery_pct, mode=mode, target=target)
            self.registry.add(Drone(spec.id, model, state, home=home, payload_kg=spec.payload_kg))
        if problems:
            raise ConfigurationError(f"Scenario '{self.definition.name}' is inconsistent", problems)

    # -- lifecycle ----------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> tuple[ScenarioOutcome, str] | None:
        return self._outcome

    def cancel(self) -> None:
        """Request cooperative cancellation, observed at the next tick boundary."""
        self.bridge.request_cancel()

    def close(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> ScenarioOrchestrator:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _start(self) -> None:
        self._started = True
        self._wall_start = time.monotonic()
        self._started_at = time.time()
        self.clock.start()
        self.bridge.mark_started(self.definition.name, self.run_id)
        self._log.info(
            f"Scenario '{self.definition.name}' starting: {len(self.registry)} drones, "
            f"dt={self.definition.dt_s}s, max {self.definition.max_duration_s}s, "
            f"seed={self.definition.seed}, pacing={self.clock.pacing.value}"
        )
        try:
            self._apply_due_events()
        except FatalSimulationError as exc:
            self._set_fatal(str(exc))
        except Exception as exc:  # same contract as a tick: the run ends as Failure
            self._log.exception("Unexpected error applying start-up events")
            self._set_fatal(f"unexpected {type(exc).__name__}: {exc}")

    def run(self) -> ScenarioResult:
        """Drive ticks to a terminal outcome and hand the result to the Bridge."""
        try:
            while self.step() is None:
                self.clock.wait_next(self.bridge.cancel_event)
            return self.result()
        finally:
            self.close()

    def step(self) -> tuple[ScenarioOutcome, str] | None:
        """Run exactly one tick. Returns the terminal outcome once reached."""
        if self._outcome is not None:
            return self._outcome
        if not self._started:
            self._start()

        if self._fatal is None:
            try:
                self._tick()
            except (FatalSimulationError, ResourceExhaustion) as exc:
                self._set_fatal(str(exc))
            except Exception as exc:  # any escape from a tick ends the run as Failure
                self._log.exception(f"Unexpected error in tick {self.clock.tick}")
                self._set_fatal(f"unexpected {type(exc).__name__}: {exc}")

        self._outcome = self._evaluate_termination()
        final = self._outcome is not None
        if final or self.clock.tick % self.definition.telemetry_decimation == 0:
            self.bridge.publish_snapshot(self.snapshot())
        if final:
            self._publish_result()
        return self._outcome

    # -- tick phases --------------------------------------------------------

    def _tick(self) -> None:
        dt = self.clock.dt
        now = self.clock.time_s + dt

        outcomes = self.physics.step(self.registry.drones(), self.environment, dt)
        self.registry.commit((o.drone_id, o.state) for o in outcomes)
        fatal = None
        for outcome in outcomes:
            self._record_transitions(outcome, now)
            if outcome.fault is not None:
                fatal = self._handle_fault(outcome, now) or fatal

        self._radio_pass(now)
        self._drain_commands(now)

        self.clock.advance()
        self._apply_due_events()

        drones = self.registry.drones()
        self.metrics.observe_fleet(drones)
        self.criteria.update(drones, self.radio, self.clock.time_s)
        if fatal is not None:
            raise FatalSimulationError(fatal)

    def _record_transitions(self, outcome: PhysicsOutcome, now: float) -> None:
        for old, new, trigger in outcome.transitions:
            self.metrics.record(MetricEvent(
                kind="mode_transition", sim_time_s=now, drone_id=outcome.drone_id,
                data={"from": old.value, "to": new.value, "trigger": trigger},
            ))
            if new is FlightMode.CRASHED:
                self.metrics.record(MetricEvent(
                    kind="crash", sim_time_s=now, drone_id=outcome.drone_id, data={"cause": trigger},
                ))
                self._log.warning(f"{outcome.drone_id} crashed ({trigger}) at t={now:.1f}s")
            elif new is FlightMode.EMERGENCY:
                self._log.warning(f"{outcome.drone_id} entered emergency descent ({trigger})")

    def _handle_fault(self, outcome: PhysicsOutcome, now: float) -> str | None:
        fault = IntegrationFault(outcome.drone_id, outcome.fault or "invalid state")
        previous = self._fault_times.get(outcome.drone_id)
        self._fault_times[outcome.drone_id] = now
        self.metrics.record(MetricEvent(
            kind="integration_fault", sim_time_s=now, drone_id=outcome.drone_id,
            data={"detail": fault.detail},
        ))
        if previous is not None and now - previous <= self.limits.fault_window_s:
            return (f"{fault} (recurred within {self.limits.fault_window_s:g}s of "
                    f"simulated time)")
        self._log.warning(f"Integration fault recovered: {fault}")
        self.metrics.add_error(ErrorRecord(
            tick=self.clock.tick + 1, sim_time_s=now, severity="warning",
            kind="integration_fault", message=str(fault), drone_id=outcome.drone_id,
        ))
        return None

    def _radio_pass(self, now: float) -> None:
        drones = [d for d in self.registry.drones() if not d.state.is_crashed]
        endpoints = [Endpoint(BRIDGE_ENDPOINT, self.ground_station)]
        endpoints += [Endpoint(d.drone_id, d.state.position, d.state.radio_ok) for d in drones]
        self.radio.update_links(endpoints, self.environment)

        for drone in drones:
            self.radio.send_message(
                drone.drone_id, BRIDGE_ENDPOINT,
                {"battery_pct": drone.state.battery_pct, "mode": drone.state.mode.value},
                now, kind="telemetry",
            )
        if now + 1e-9 >= self._next_heartbeat_s:
            for drone in drones:
                self.radio.send_message(drone.drone_id, None, {"tick": self.clock.tick + 1}, now,
                                        kind="heartbeat")
            self._next_heartbeat_s += self.radio.config.heartbeat_interval_s

        self.radio.deliver_due(now)
        self.radio.inbox(BRIDGE_ENDPOINT)

    def _drain_commands(self, now: float) -> None:
        radio_commands: list[CommandMessage] = []
        for drone in self.registry.drones():
            for message in self.radio.inbox(drone.drone_id):
                if message.kind == "command":
                    radio_commands.append(message.payload)

        queued = self.bridge.drain_commands()
        if self.command_delivery == "radio":
            for command in queued:
                self._transmit_command(command, now)
            queued = []

        for command in radio_commands + queued:
            self._apply_command(command, now)

    def _transmit_command(self, command: CommandMessage, now: float) -> None:
        if command.drone_id not in self.registry:
            self._apply_command(command, now)
            return
        drone = self.registry.get(command.drone_id)
        if drone.state.is_crashed:
            self._apply_command(command, now)
            return
        if not self.radio.send_message(BRIDGE_ENDPOINT, command.drone_id, command, now, kind="command"):
            self._finish_command(command, CommandRejected(
                command.command_id, command.drone_id, "lost in transit",
            ), now)

    def _apply_command(self, command: CommandMessage, now: float) -> None:
        drone = self.registry.get(command.drone_id)
        if drone is None:
            result = CommandRejected(command.command_id, command.drone_id,
                                     f"unknown drone '{command.drone_id}'")
        else:
            result = evaluate_command(
                drone, command.command.value, command.params, command.command_id,
                geo=self.geo, environment=self.environment,
                max_altitude_m=self.limits.max_altitude_m,
            )
            if isinstance(result, CommandAccepted):
                old = drone.state.mode
                self.registry.set_state(drone.drone_id, result.state)
                if result.state.mode is not old:
                    self.metrics.record(MetricEvent(
                        kind="mode_transition", sim_time_s=now, drone_id=drone.drone_id,
                        data={"from": old.value, "to": result.state.mode.value,
                              "trigger": command.command.value},
                    ))
        self._finish_command(command, result, now)

    def _finish_command(self, command: CommandMessage, result: CommandAccepted | CommandRejected,
                        now: float) -> None:
        data = {"command_id": command.command_id, "command": command.command.value}
        if isinstance(result, CommandAccepted):
            self.metrics.record(MetricEvent("command_accepted", now, command.drone_id, data))
            status = CommandStatus(
                command_id=command.command_id, drone_id=command.drone_id,
                command=command.command.value, status="accepted",
                tick=self.clock.tick + 1, sim_time_s=now,
            )
        else:
            self.metrics.record(MetricEvent(
                "command_rejected", now, command.drone_id, {**data, "reason": result.reason},
            ))
            self._log.debug(f"Command {command.command_id} rejected for {command.drone_id}: {result.reason}")
            status = CommandStatus(
                command_id=command.command_id, drone_id=command.drone_id,
                command=command.command.value, status="rejected", reason=result.reason,
                tick=self.clock.tick + 1, sim_time_s=now,
            )
        self.bridge.record_command_result(status)

    def _apply_due_events(self) -> None:
        now = self.clock.time_s
        while self._events and self._events[0][1].at_s <= now + 1e-9:
            index, event = self._events.popleft()
            self._apply_event(index, event, now)

    def _apply_event(self, index: int, event: ScenarioEvent, now: float) -> None:
        self.metrics.record(MetricEvent(
            kind="scripted_event", sim_time_s=now, drone_id=event.drone_id,
            data={"event": event.kind.value, "params": dict(event.params)},
        ))
        self._log.info(f"Scripted event at t={now:.1f}s: {event.kind.value}"
                       + (f" ({event.drone_id})" if event.drone_id else ""))
        if event.kind in ENVIRONMENT_EVENTS:
            self.environment = self.environment.apply(event.kind.value, event.params, self.geo)
            return
        drone_id = event.drone_id
        if event.kind is EventKind.DRONE_FAULT:
            fault = event.params["fault"]
            if fault == "battery_failure":
                level = float(event.params.get("battery_pct", 0.0))
                self.registry.update(drone_id, lambda s: s.evolve(battery_pct=min(s.battery_pct, level)))
            elif fault == "motor_failure":
                health = float(event.params.get("health", 0.0))
                self.registry.update(drone_id, lambda s: s.evolve(motor_health=min(1.0, health)))
            else:
                self.registry.update(drone_id, lambda s: s.evolve(radio_ok=False))
        elif event.kind is EventKind.RECHARGE:
            level = min(100.0, float(event.params.get("battery_pct", 100.0)))
            self.registry.update(drone_id, lambda s: s.evolve(battery_pct=level))
        elif event.kind is EventKind.COMMAND:
            command = CommandMessage(
                command_id=f"scripted-{index}",
                drone_id=drone_id,
                command=event.params["command"],
                params=event.params.get("params", {}),
                issued_at=self._started_at,
            )
            self._apply_command(command, now)

    # -- termination --------------------------------------------------------

    def _set_fatal(self, cause: str) -> None:
        if self._fatal is not None:
            return
        self._fatal = cause
        self._log.error(f"Fatal: {cause}")
        self.metrics.add_error(ErrorRecord(
            tick=self.clock.tick, sim_time_s=self.clock.time_s, severity="fatal",
            kind="fatal", message=cause,
        ))

    def _evaluate_termination(self) -> tuple[ScenarioOutcome, str] | None:
        if self._fatal is not None:
            return (ScenarioOutcome.FAILURE, f"fatal: {self._fatal}")
        if self.bridge.cancel_requested:
            return (ScenarioOutcome.CANCELLED, "cancelled by request")
        drones = self.registry.drones()
        reason = self.criteria.failure_reason(drones, self.clock.time_s)
        if reason is not None:
            return (ScenarioOutcome.FAILURE, reason)
        reason = self.criteria.success_reason(drones)
        if reason is not None:
            return (ScenarioOutcome.SUCCESS, reason)
        if self.clock.tick >= self._max_ticks:
            return (ScenarioOutcome.TIMED_OUT,
                    f"max duration {self.definition.max_duration_s:g}s elapsed")
        return None

    # -- outputs ------------------------------------------------------------

    def drone_telemetry(self, drone: Drone) -> DroneTelemetry:
        state = drone.state
        x, y, z = state.position
        lat, lon, alt = self.geo.to_latlon(x, y, z)
        crashed = state.is_crashed
        return DroneTelemetry(
            id=drone.drone_id,
            model=drone.model.kind,
            lat=lat,
            lon=lon,
            alt=alt,
            relative_alt=z - self.environment.ground_at(x, y),
            velocity=state.velocity,
            body_velocity=body_velocity(state.velocity, state.attitude.yaw),
            roll=state.attitude.roll,
            pitch=state.attitude.pitch,
            yaw=state.attitude.yaw,
            battery_pct=state.battery_pct,
            mode=state.mode,
            last_command=state.last_command,
            link_quality=None if crashed else self.radio.link_quality(drone.drone_id, BRIDGE_ENDPOINT),
            online=state.radio_ok and not crashed,
            capabilities=drone.model.capability_names(),
        )

    def snapshot(self) -> TelemetrySnapshot:
        """Immutable view of the fleet, carrying events since the last snapshot."""
        return TelemetrySnapshot(
            tick=self.clock.tick,
            sim_time_s=self.clock.time_s,
            drones=[self.drone_telemetry(d) for d in self.registry.drones()],
            links=[
                LinkTelemetry(
                    a=link.a, b=link.b, distance_m=link.distance_m,
                    attenuation_db=link.attenuation_db, latency_s=link.latency_s,
                    loss_probability=link.loss_probability, quality=link.quality,
                )
                for link in self.radio.links()
            ],
            events=[e.to_dict() for e in self.metrics.drain_events()],
            counters=self.metrics.counters(),
        )

    def result(self) -> ScenarioResult:
        if self._result is None:
            raise RuntimeError("Scenario has not finished")
        return self._result

    def _publish_result(self) -> None:
        outcome, reason = self._outcome
        self._result = ScenarioResult(
            run_id=self.run_id,
            scenario_name=self.definition.name,
            seed=self.definition.seed,
            outcome=outcome,
            reason=reason,
            ticks=self.clock.tick,
            sim_time_s=self.clock.time_s,
            wall_time_s=time.monotonic() - self._wall_start,
            started_at=self._started_at,
            metrics=self.metrics.summary(),
            errors=[e.to_dict() for e in self.metrics.errors],
            fatal_cause=self._fatal,
            final_drones=[self.drone_telemetry(d) for d in self.registry.drones()],
        )
        self._log.info(
            f"Scenario '{self.definition.name}' finished: {outcome.value} ({reason}) "
            f"after {self.clock.tick} ticks / {self.clock.time_s:.1f}s simulated"
        )
        self.bridge.publish_result(self._result)
