"""Scenario definitions, validation, and the result archive."""
from .library import ResultArchive, load_scenario, parse_scenario
from .schema import (
    CommandMessage,
    ScenarioDefinition,
    ScenarioOutcome,
    ScenarioResult,
    TelemetrySnapshot,
)
