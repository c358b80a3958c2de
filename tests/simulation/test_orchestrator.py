"""Tests for ScenarioOrchestrator: tick ordering, termination, faults and events."""
from __future__ import annotations

from dataclasses import replace

import pytest

from fleetsim.config import EngineLimits
from fleetsim.errors import ConfigurationError, ResourceExhaustion
from fleetsim.scenarios.library import load_scenario
from fleetsim.scenarios.schema import ScenarioOutcome
from fleetsim.simulation.models import FlightMode
from fleetsim.simulation.orchestrator import (
    ScenarioOrchestrator,
    aborted_result,
    check_limits,
    link_count,
)

IDLE_DRONE = {"id": "d1", "model": "quadcopter",
              "position": {"lat": 37.0, "lon": -122.0, "alt": 0.0},
              "initial_mode": "idle"}


def drone_spec(drone_id, **fields):
    return {**IDLE_DRONE, "id": drone_id, **fields}


def mode_of(orch, drone_id="d1"):
    return orch.registry.get(drone_id).state.mode


@pytest.mark.unit
class TestLimits:
    def test_link_count_includes_ground_station(self):
        assert link_count(1) == 1
        assert link_count(24) == 300
        assert link_count(25) == 325

    def test_too_many_drones(self, make_definition):
        definition = make_definition(drones=[drone_spec(f"d{i}") for i in range(3)])
        with pytest.raises(ResourceExhaustion, match="engine limit is 2"):
            check_limits(definition, EngineLimits(max_drones=2))

    def test_too_many_links(self, make_definition):
        definition = make_definition(drones=[drone_spec("a"), drone_spec("b")])
        with pytest.raises(ResourceExhaustion, match="radio links"):
            ScenarioOrchestrator(definition, limits=EngineLimits(max_links=2, physics_workers=0))

    def test_step_above_engine_maximum(self, make_definition):
        with pytest.raises(ConfigurationError):
            check_limits(make_definition(dt_s=0.2), EngineLimits())

    def test_aborted_result(self, make_definition):
        result = aborted_result(make_definition(), "too big")
        assert result.outcome is ScenarioOutcome.FAILURE
        assert result.fatal_cause == "too big"
        assert result.ticks == 0


@pytest.mark.unit
class TestRoster:
    def test_flying_drone_holds_start_position(self, make_definition, serial_limits):
        with ScenarioOrchestrator(make_definition(), limits=serial_limits) as orch:
            state = orch.registry.get("d1").state
            assert state.mode is FlightMode.FLYING
            assert state.position[2] == pytest.approx(20.0)
            assert state.target == state.position
            assert orch.registry.get("d1").home[2] == 0.0

    def test_grounded_drone_pinned_to_terrain(self, make_definition, serial_limits):
        spec = drone_spec("d1", position={"lat": 37.0, "lon": -122.0, "alt": 30.0})
        definition = make_definition(drones=[spec], environment={"terrain": {"elevation_m": 12.0}})
        with ScenarioOrchestrator(definition, limits=serial_limits) as orch:
            assert orch.registry.get("d1").state.position[2] == 12.0

    def test_flying_below_terrain_rejected(self, make_definition, serial_limits):
        spec = drone_spec("d1", initial_mode="flying")
        with pytest.raises(ConfigurationError) as exc:
            ScenarioOrchestrator(make_definition(drones=[spec]), limits=serial_limits)
        assert "requires altitude above terrain" in str(exc.value)

    def test_payload_beyond_lift_rejected(self, make_definition, serial_limits):
        spec = drone_spec("d1", payload_kg=4.0)
        with pytest.raises(ConfigurationError, match="exceeds lift capacity"):
            ScenarioOrchestrator(make_definition(drones=[spec]), limits=serial_limits)

    def test_model_overrides_apply(self, make_definition, serial_limits):
        spec = drone_spec("d1", overrides={"hover_endurance_s": 600.0})
        with ScenarioOrchestrator(make_definition(drones=[spec]), limits=serial_limits) as orch:
            assert orch.registry.get("d1").model.hover_endurance_s == 600.0


@pytest.mark.unit
class TestTermination:
    def test_times_out_after_max_duration(self, make_definition, serial_limits):
        result = ScenarioOrchestrator(make_definition(), limits=serial_limits).run()
        assert result.outcome is ScenarioOutcome.TIMED_OUT
        assert result.ticks == 50
        assert result.sim_time_s == pytest.approx(5.0)
        assert result.final_drones[0].mode is FlightMode.FLYING

    def test_success_criteria(self, make_definition, serial_limits):
        criterion = {"kind": "reach_position", "drone_id": "d1",
                     "position": {"lat": 37.0, "lon": -122.0, "alt": 20.0}}
        result = ScenarioOrchestrator(make_definition(success=[criterion]),
                                      limits=serial_limits).run()
        assert result.outcome is ScenarioOutcome.SUCCESS
        assert result.ticks == 1

    def test_failure_beats_success(self, make_definition, serial_limits):
        definition = make_definition(
            success=[{"kind": "reach_position", "drone_id": "d1",
                      "position": {"lat": 37.0, "lon": -122.0, "alt": 20.0}}],
            failure=[{"kind": "battery_below", "pct": 100}],
        )
        result = ScenarioOrchestrator(definition, limits=serial_limits).run()
        assert result.outcome is ScenarioOutcome.FAILURE
        assert result.reason == "d1 battery below 100%"

    def test_cancel_observed_at_tick_boundary(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(), limits=serial_limits)
        assert orch.step() is None
        orch.cancel()
        outcome, reason = orch.step()
        assert outcome is ScenarioOutcome.CANCELLED
        assert orch.result().ticks == 2
        orch.close()

    def test_result_before_finish(self, make_definition, serial_limits):
        with ScenarioOrchestrator(make_definition(), limits=serial_limits) as orch:
            with pytest.raises(RuntimeError):
                orch.result()

    def test_step_after_finish_is_stable(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(max_duration_s=0.1), limits=serial_limits)
        first = orch.step()
        assert first[0] is ScenarioOutcome.TIMED_OUT
        assert orch.step() == first
        assert orch.clock.tick == 1
        orch.close()

    def test_all_crashed_fails_without_criteria(self, make_definition, serial_limits):
        events = [{"at_s": 0, "kind": "drone_fault", "drone_id": "d1",
                   "params": {"fault": "motor_failure"}}]
        result = ScenarioOrchestrator(make_definition(events=events), limits=serial_limits).run()
        assert result.outcome is ScenarioOutcome.FAILURE
        assert result.reason == "all drones crashed"

    def test_crash_fails_run(self, make_definition, scenario_data, serial_limits):
        events = [{"at_s": 0, "kind": "drone_fault", "drone_id": "d1",
                   "params": {"fault": "motor_failure"}}]
        drones = [scenario_data["drones"][0], drone_spec("d2")]
        definition = make_definition(drones=drones, events=events,
                                     failure=[{"kind": "any_crashed"}])
        result = ScenarioOrchestrator(definition, limits=serial_limits).run()
        assert result.outcome is ScenarioOutcome.FAILURE
        assert result.reason == "drone crashed: d1"
        assert result.metrics["counters"]["crash"] == 1

    def test_result_published_to_bridge(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(max_duration_s=0.5), limits=serial_limits)
        q = orch.bridge.event_bus.subscribe("sim_result")
        result = orch.run()
        assert orch.bridge.result == result
        assert q.get_nowait()["data"]["run_id"] == orch.run_id


@pytest.mark.unit
class TestCommands:
    def _idle(self, make_definition, serial_limits, **overrides):
        return ScenarioOrchestrator(make_definition(drones=[IDLE_DRONE], **overrides),
                                    limits=serial_limits)

    def test_command_applied_at_next_drain(self, make_definition, serial_limits):
        orch = self._idle(make_definition, serial_limits)
        command_id = orch.bridge.submit_command({"drone_id": "d1", "command": "arm"})
        orch.step()
        assert mode_of(orch) is FlightMode.ARMED
        status = orch.bridge.command_result(command_id)
        assert status.status == "accepted"
        assert status.tick == 1
        orch.close()

    def test_command_submitted_mid_tick_waits_for_next_tick(self, make_definition, serial_limits):
        orch = self._idle(make_definition, serial_limits)
        submitted = {}
        update = orch.criteria.update

        def update_then_submit(drones, radio, sim_time_s):
            update(drones, radio, sim_time_s)
            if orch.clock.tick == 3 and not submitted:
                submitted["id"] = orch.bridge.submit_command({"drone_id": "d1", "command": "arm"})

        orch.criteria.update = update_then_submit
        for _ in range(3):
            orch.step()
        assert mode_of(orch) is FlightMode.IDLE
        assert orch.bridge.command_result(submitted["id"]).status == "queued"
        orch.step()
        assert mode_of(orch) is FlightMode.ARMED
        assert orch.bridge.command_result(submitted["id"]).tick == 4
        orch.close()

    def test_invalid_command_rejected_with_reason(self, make_definition, serial_limits):
        orch = self._idle(make_definition, serial_limits)
        command_id = orch.bridge.submit_command({"drone_id": "d1", "command": "takeoff"})
        orch.step()
        status = orch.bridge.command_result(command_id)
        assert status.status == "rejected"
        assert "not valid in mode idle" in status.reason
        assert mode_of(orch) is FlightMode.IDLE
        assert orch.metrics.counters()["command_rejected"] == 1
        orch.close()

    def test_unknown_drone_rejected(self, make_definition, serial_limits):
        orch = self._idle(make_definition, serial_limits)
        command_id = orch.bridge.submit_command({"drone_id": "ghost", "command": "arm"})
        orch.step()
        assert orch.bridge.command_result(command_id).reason == "unknown drone 'ghost'"
        orch.close()

    def test_commands_applied_in_submission_order(self, make_definition, serial_limits):
        orch = self._idle(make_definition, serial_limits)
        first = orch.bridge.submit_command({"drone_id": "d1", "command": "arm"})
        second = orch.bridge.submit_command({"drone_id": "d1", "command": "takeoff"})
        orch.step()
        assert orch.bridge.command_result(first).status == "accepted"
        assert orch.bridge.command_result(second).status == "accepted"
        assert mode_of(orch) is FlightMode.TAKING_OFF
        orch.close()

    def test_radio_delivery_adds_link_latency(self, make_definition, serial_limits):
        orch = self._idle(make_definition, serial_limits,
                          radio={"command_delivery": "radio"},
                          environment={"noise_floor": 0.0})
        command_id = orch.bridge.submit_command({"drone_id": "d1", "command": "arm"})
        orch.step()
        assert mode_of(orch) is FlightMode.IDLE
        assert orch.bridge.command_result(command_id).status == "queued"
        orch.step()
        assert mode_of(orch) is FlightMode.ARMED
        assert orch.bridge.command_result(command_id).tick == 2
        orch.close()

    def test_radio_delivery_to_failed_radio_is_lost(self, make_definition, serial_limits):
        events = [{"at_s": 0, "kind": "drone_fault", "drone_id": "d1",
                   "params": {"fault": "radio_failure"}}]
        orch = self._idle(make_definition, serial_limits, events=events,
                          radio={"command_delivery": "radio"})
        command_id = orch.bridge.submit_command({"drone_id": "d1", "command": "arm"})
        orch.step()
        status = orch.bridge.command_result(command_id)
        assert status.status == "rejected"
        assert status.reason == "lost in transit"
        orch.close()


@pytest.mark.unit
class TestScriptedEvents:
    def test_scripted_takeoff_sequence(self, make_definition, serial_limits):
        events = [
            {"at_s": 0, "kind": "command", "drone_id": "d1", "params": {"command": "arm"}},
            {"at_s": 0.5, "kind": "command", "drone_id": "d1",
             "params": {"command": "takeoff", "params": {"altitude_m": 5}}},
        ]
        orch = ScenarioOrchestrator(make_definition(drones=[IDLE_DRONE], events=events,
                                                    max_duration_s=20.0),
                                    limits=serial_limits)
        orch.step()
        assert mode_of(orch) is FlightMode.ARMED
        for _ in range(4):
            orch.step()
        assert mode_of(orch) is FlightMode.TAKING_OFF
        result = orch.run()
        assert result.final_drones[0].mode is FlightMode.FLYING
        assert result.final_drones[0].relative_alt == pytest.approx(5.0, abs=0.3)
        assert result.metrics["counters"]["scripted_event"] == 2

    def test_environment_events(self, make_definition, serial_limits):
        events = [
            {"at_s": 0.2, "kind": "set_wind", "params": {"speed_mps": 4.0, "direction_deg": 0}},
            {"at_s": 0.3, "kind": "add_interference",
             "params": {"id": "j", "lat": 37.0, "lon": -122.0, "strength": 2.0}},
        ]
        orch = ScenarioOrchestrator(make_definition(events=events), limits=serial_limits)
        orch.step()
        assert orch.environment.wind == (0.0, 0.0, 0.0)
        orch.step()
        assert orch.environment.wind[1] == pytest.approx(-4.0)
        orch.step()
        assert [s.source_id for s in orch.environment.interference] == ["j"]
        orch.close()

    def test_battery_failure_forces_emergency(self, make_definition, serial_limits):
        events = [{"at_s": 0.1, "kind": "drone_fault", "drone_id": "d1",
                   "params": {"fault": "battery_failure"}}]
        orch = ScenarioOrchestrator(make_definition(events=events), limits=serial_limits)
        orch.step()
        assert orch.registry.get("d1").state.battery_pct == 0.0
        orch.step()
        assert mode_of(orch) is FlightMode.EMERGENCY
        orch.close()

    def test_recharge(self, make_definition, serial_limits):
        events = [{"at_s": 0.1, "kind": "recharge", "drone_id": "d1",
                   "params": {"battery_pct": 60}}]
        orch = ScenarioOrchestrator(make_definition(events=events), limits=serial_limits)
        orch.step()
        assert orch.registry.get("d1").state.battery_pct == 60.0
        orch.close()


@pytest.mark.unit
class TestFaults:
    def _faulty(self, orch, drone_ids):
        step = orch.physics.step

        def faulty_step(drones, environment, dt):
            return [replace(o, fault="injected") if o.drone_id in drone_ids else o
                    for o in step(drones, environment, dt)]

        orch.physics.step = faulty_step

    def test_single_fault_is_recoverable(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(), limits=serial_limits)
        self._faulty(orch, {"d1"})
        assert orch.step() is None
        errors = orch.metrics.errors
        assert [(e.severity, e.kind, e.drone_id) for e in errors] == [
            ("warning", "integration_fault", "d1")]
        orch.close()

    def test_recurring_fault_is_fatal(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(), limits=serial_limits)
        self._faulty(orch, {"d1"})
        orch.step()
        outcome, reason = orch.step()
        assert outcome is ScenarioOutcome.FAILURE
        assert reason.startswith("fatal: d1: injected")
        result = orch.result()
        assert "recurred" in result.fatal_cause
        assert [e["severity"] for e in result.errors] == ["warning", "fatal"]
        orch.close()

    def test_unexpected_exception_ends_run(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(), limits=serial_limits)

        def broken(*args):
            raise KeyError("boom")

        orch.physics.step = broken
        outcome, reason = orch.step()
        assert outcome is ScenarioOutcome.FAILURE
        assert "unexpected KeyError" in reason
        orch.close()

    def test_error_in_start_up_event_ends_run(self, make_definition, serial_limits):
        events = [{"at_s": 0, "kind": "recharge", "drone_id": "d1"}]
        orch = ScenarioOrchestrator(make_definition(events=events), limits=serial_limits)

        def broken(*args):
            raise KeyError("boom")

        orch._apply_event = broken
        result = orch.run()
        assert result.outcome is ScenarioOutcome.FAILURE
        assert "unexpected KeyError" in result.fatal_cause
        assert orch.bridge.result == result


@pytest.mark.unit
class TestTelemetry:
    def test_decimation(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(max_duration_s=1.0, telemetry_decimation=3),
                                    limits=serial_limits)
        orch.run()
        assert [s.tick for s in orch.bridge.history()] == [3, 6, 9, 10]

    def test_snapshot_contents(self, make_definition, serial_limits):
        orch = ScenarioOrchestrator(make_definition(), limits=serial_limits)
        orch.step()
        snap = orch.bridge.latest
        assert snap.tick == 1
        assert snap.sim_time_s == pytest.approx(0.1)
        (drone,) = snap.drones
        assert drone.lat == pytest.approx(37.0)
        assert drone.lon == pytest.approx(-122.0)
        assert drone.relative_alt == pytest.approx(20.0)
        assert 0.0 <= drone.link_quality <= 1.0
        assert drone.online
        assert drone.capabilities == ("video", "payload_bay")
        assert [(l.a, l.b) for l in snap.links] == [("bridge", "d1")]
        assert snap.counters["messages_sent"] >= 1
        orch.close()

    def test_events_carried_once(self, make_definition, serial_limits):
        events = [{"at_s": 0.1, "kind": "recharge", "drone_id": "d1"}]
        orch = ScenarioOrchestrator(make_definition(events=events), limits=serial_limits)
        orch.step()
        first = [e["kind"] for e in orch.bridge.latest.events]
        orch.step()
        second = [e["kind"] for e in orch.bridge.latest.events]
        assert "scripted_event" in first
        assert "scripted_event" not in second
        orch.close()

    def test_same_seed_same_snapshots(self, make_definition):
        definition = make_definition(
            drones=[drone_spec("a"), drone_spec("b", position={"lat": 37.001, "lon": -122.0})],
            events=[
                {"at_s": 0, "kind": "command", "drone_id": "a", "params": {"command": "arm"}},
                {"at_s": 0, "kind": "command", "drone_id": "b", "params": {"command": "arm"}},
                {"at_s": 0.2, "kind": "command", "drone_id": "a", "params": {"command": "takeoff"}},
                {"at_s": 0.2, "kind": "command", "drone_id": "b", "params": {"command": "takeoff"}},
            ],
            environment={"wind": {"speed_mps": 5.0, "direction_deg": 200}},
            max_duration_s=8.0,
        )

        def run(workers):
            orch = ScenarioOrchestrator(definition, limits=EngineLimits(physics_workers=workers))
            result = orch.run()
            return ([s.model_dump() for s in orch.bridge.history()],
                    result.metrics, [d.model_dump() for d in result.final_drones])

        serial = run(0)
        assert serial == run(0)
        assert serial == run(3)


@pytest.mark.integration
class TestBundledScenarios:
    def test_hover_endurance(self, scenario_dir, serial_limits):
        definition = load_scenario(scenario_dir / "hover_endurance.yaml")
        result = ScenarioOrchestrator(definition, limits=serial_limits).run()
        assert result.outcome is ScenarioOutcome.TIMED_OUT
        (drone,) = result.final_drones
        assert drone.mode is FlightMode.FLYING
        assert drone.battery_pct == pytest.approx(80.0, abs=0.01)
        assert drone.relative_alt == pytest.approx(50.0)
