"""Simulation core: drone models, physics, radio, clock and metrics.

The orchestrator, bridge and criteria modules depend on the scenario schema
and are imported from their own modules.
"""
from .clock import Pacing, SimulationClock
from .environment import Environment, InterferenceSource, Precipitation, PrecipitationKind, Terrain
from .flight_modes import CommandAccepted, CommandRejected, CommandType, evaluate_command, transition
from .metrics import ErrorRecord, MetricEvent, MetricsAggregator
from .models import (
    MODEL_PRESETS,
    Attitude,
    Drone,
    DroneModel,
    DroneState,
    FlightMode,
    ModelKind,
    SensorKind,
    SensorSpec,
    build_model,
)
from .physics import PhysicsConfig, PhysicsEngine, PhysicsOutcome
from .radio import BRIDGE_ENDPOINT, Endpoint, LinkState, RadioConfig, RadioModel
from .registry import EntityRegistry
