"""Error taxonomy for the simulation engine.

Only load-time and fatal conditions are exceptions.  Packet loss is a
modelled physical effect (``PacketLost`` metric event) and command rejection
is a routine result value (``CommandRejected``); neither is raised.
"""

from __future__ import annotations


class FleetSimError(Exception):
    """Base class for all fleetsim errors."""


class ConfigurationError(FleetSimError):
    """Scenario definition is malformed or inconsistent.

    Raised before the tick loop starts; the simulation never begins.
    """

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.problems:
            return base
        return base + "\n" + "\n".join(f"  - {p}" for p in self.problems)


class ResourceExhaustion(FleetSimError):
    """Configured drone or link counts exceed the engine limits."""


class IntegrationFault(FleetSimError):
    """A physics step produced a non-finite or otherwise invalid state."""

    def __init__(self, drone_id: str, detail: str) -> None:
        super().__init__(f"{drone_id}: {detail}")
        self.drone_id = drone_id
        self.detail = detail


class FatalSimulationError(FleetSimError):
    """Unrecoverable condition; the loop stops at the next tick boundary."""
