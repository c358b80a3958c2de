"""TelemetryBridge: the simulator's only outward surface.

Inbound, external producers (CLI, MQTT relay, HTTP handlers) submit commands
into a bounded thread-safe queue at any time.  Only the orchestrator drains
it, once per tick, so a command is never visible mid-tick.

Outbound, the orchestrator publishes immutable telemetry snapshots, command
results and the terminal scenario result.  Each is stored for polling
readers and published on the EventBus:

    sim_telemetry   TelemetrySnapshot (JSON dict)
    command_result  CommandStatus (JSON dict)
    sim_result      ScenarioResult (JSON dict)
"""

from __future__ import annotations

import queue
import threading
from collections import OrderedDict, deque
from typing import Any

from loguru import logger

from fleetsim.comms.event_bus import EventBus
from fleetsim.scenarios.schema import (
    CommandMessage,
    CommandStatus,
    ScenarioResult,
    TelemetrySnapshot,
)


class TelemetryBridge:
    """Thread-safe handoff between the tick loop and external adapters."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        queue_size: int = 1000,
        history_size: int = 600,
        status_limit: int = 10_000,
    ) -> None:
        self.event_bus = event_bus or EventBus()
        self._ingress: queue.Queue[CommandMessage] = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        self._latest: TelemetrySnapshot | None = None
        self._history: deque[TelemetrySnapshot] = deque(maxlen=history_size)
        self._commands: OrderedDict[str, CommandStatus] = OrderedDict()
        self._status_limit = max(status_limit, queue_size)
        self._result: ScenarioResult | None = None
        self._cancel = threading.Event()
        self._scenario: str | None = None
        self._run_id: str | None = None

    # -- inbound ------------------------------------------------------------

    def submit_command(self, command: CommandMessage | dict[str, Any]) -> str:
        """Queue a command for the next tick boundary and return its id.

        Raises ``pydantic.ValidationError`` for a malformed message and
        ``queue.Full`` when the ingress queue is at capacity.
        """
        if not isinstance(command, CommandMessage):
            command = CommandMessage.model_validate(command)
        # The queued status must exist before the orchestrator can see the command.
        with self._lock:
            previous = self._commands.get(command.command_id)
            self._commands[command.command_id] = CommandStatus(
                command_id=command.command_id,
                drone_id=command.drone_id,
                command=command.command.value,
            )
            self._trim_statuses()
        try:
            self._ingress.put_nowait(command)
        except queue.Full:
            with self._lock:
                if previous is None:
                    self._commands.pop(command.command_id, None)
                else:
                    self._commands[command.command_id] = previous
            raise
        return command.command_id

    def _trim_statuses(self) -> None:
        """Forget the oldest finished statuses beyond the limit. Caller holds the lock."""
        excess = len(self._commands) - self._status_limit
        if excess <= 0:
            return
        for command_id in [cid for cid, s in self._commands.items() if s.status != "queued"][:excess]:
            del self._commands[command_id]

    def drain_commands(self) -> list[CommandMessage]:
        """Take every queued command in submission order. Orchestrator only."""
        drained = []
        while True:
            try:
                drained.append(self._ingress.get_nowait())
            except queue.Empty:
                return drained

    def request_cancel(self) -> None:
        logger.info("Cancellation requested")
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    # -- outbound -----------------------------------------------------------

    def mark_started(self, scenario_name: str, run_id: str) -> None:
        with self._lock:
            self._scenario = scenario_name
            self._run_id = run_id

    def publish_snapshot(self, snapshot: TelemetrySnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            self._history.append(snapshot)
        self.event_bus.publish("sim_telemetry", snapshot.model_dump(mode="json"))

    def record_command_result(self, status: CommandStatus) -> None:
        with self._lock:
            self._commands[status.command_id] = status
            self._trim_statuses()
        self.event_bus.publish("command_result", status.model_dump(mode="json"))

    def publish_result(self, result: ScenarioResult) -> None:
        with self._lock:
            self._result = result
        self.event_bus.publish("sim_result", result.model_dump(mode="json"))

    # -- polling readers ----------------------------------------------------

    @property
    def latest(self) -> TelemetrySnapshot | None:
        with self._lock:
            return self._latest

    def history(self, since_tick: int | None = None) -> list[TelemetrySnapshot]:
        """Retained snapshots, oldest first, optionally only after ``since_tick``."""
        with self._lock:
            snapshots = list(self._history)
        if since_tick is None:
            return snapshots
        return [s for s in snapshots if s.tick > since_tick]

    def command_result(self, command_id: str) -> CommandStatus | None:
        with self._lock:
            return self._commands.get(command_id)

    @property
    def result(self) -> ScenarioResult | None:
        with self._lock:
            return self._result

    def status(self) -> dict[str, Any]:
        with self._lock:
            latest = self._latest
            result = self._result
            scenario = self._scenario
            run_id = self._run_id
        if result is not None:
            state = "finished"
        elif scenario is not None:
            state = "running"
        else:
            state = "idle"
        return {
            "state": state,
            "scenario": scenario,
            "run_id": run_id,
            "tick": latest.tick if latest else None,
            "sim_time_s": latest.sim_time_s if latest else None,
            "queued_commands": self._ingress.qsize(),
            "cancel_requested": self._cancel.is_set(),
            "outcome": result.outcome.value if result else None,
        }
