"""Shared fixtures: scenario documents, engine limits and drone builders."""
from __future__ import annotations

import copy
from pathlib import Path

import pytest

from fleetsim.config import EngineLimits
from fleetsim.scenarios.library import parse_scenario
from fleetsim.simulation.models import Drone, DroneState, FlightMode, ModelKind, build_model

ORIGIN = {"lat": 37.0, "lon": -122.0, "alt": 0.0}
SCENARIO_DIR = Path(__file__).resolve().parent.parent / "scenarios"

BASE_SCENARIO = {
    "schema_version": 1,
    "name": "test_hover",
    "seed": 1,
    "dt_s": 0.1,
    "max_duration_s": 5.0,
    "origin": ORIGIN,
    "drones": [
        {"id": "d1", "model": "quadcopter",
         "position": {"lat": 37.0, "lon": -122.0, "alt": 20.0},
         "initial_mode": "flying"},
    ],
}


@pytest.fixture
def scenario_data():
    """A fresh, mutable one-drone hover scenario document."""
    return copy.deepcopy(BASE_SCENARIO)


@pytest.fixture
def make_definition(scenario_data):
    """Build a validated ScenarioDefinition from the base document plus overrides."""
    def _make(**overrides):
        data = copy.deepcopy(scenario_data)
        data.update(overrides)
        return parse_scenario(data)
    return _make


@pytest.fixture
def serial_limits():
    """Engine limits with passes run on the calling thread."""
    return EngineLimits(physics_workers=0)


@pytest.fixture
def scenario_dir():
    return SCENARIO_DIR


def make_drone(
    drone_id: str = "d1",
    position=(0.0, 0.0, 20.0),
    mode: FlightMode = FlightMode.FLYING,
    kind: ModelKind = ModelKind.QUADCOPTER,
    target="hold",
    payload_kg: float = 0.0,
    **state_fields,
) -> Drone:
    """A registry record; flying drones hold their position unless told otherwise."""
    if target == "hold":
        target = tuple(position) if mode is FlightMode.FLYING else None
    state = DroneState(position=tuple(position), mode=mode, target=target, **state_fields)
    return Drone(drone_id, build_model(kind), state, home=(position[0], position[1], 0.0),
                 payload_kg=payload_kg)


@pytest.fixture
def drone_factory():
    return make_drone
