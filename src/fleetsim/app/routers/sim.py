"""Simulation API: status, telemetry polling, command submission, cancellation."""

from __future__ import annotations

import queue
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from fleetsim.scenarios.schema import CommandMessage

router = APIRouter(prefix="/api/sim", tags=["simulation"])


class CommandRequest(BaseModel):
    drone_id: str
    command: str  # arm, takeoff, goto, land, return_to_home, custom
    params: dict[str, Any] = Field(default_factory=dict)
    command_id: str | None = None


def _get_bridge(request: Request):
    """Retrieve the TelemetryBridge from app state."""
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        raise HTTPException(503, "Simulation bridge not available")
    return bridge


@router.get("/status")
async def get_status(request: Request):
    """Current run state: idle, running or finished."""
    return _get_bridge(request).status()


@router.get("/telemetry")
async def get_telemetry(request: Request):
    """Latest published telemetry snapshot."""
    snapshot = _get_bridge(request).latest
    if snapshot is None:
        raise HTTPException(404, "No telemetry published yet")
    return snapshot.model_dump(mode="json")


@router.get("/telemetry/history")
async def get_telemetry_history(request: Request, since: int | None = None):
    """Retained snapshots, optionally only those after tick ``since``."""
    snapshots = _get_bridge(request).history(since_tick=since)
    return {"count": len(snapshots), "snapshots": [s.model_dump(mode="json") for s in snapshots]}


@router.post("/commands", status_code=202)
async def submit_command(body: CommandRequest, request: Request):
    """Queue a command; it takes effect at the next tick boundary."""
    bridge = _get_bridge(request)
    data = body.model_dump(exclude_none=True)
    try:
        command = CommandMessage.model_validate(data)
    except ValidationError as e:
        raise HTTPException(422, [err["msg"] for err in e.errors()])
    try:
        command_id = bridge.submit_command(command)
    except queue.Full:
        raise HTTPException(429, "Command queue full")
    return {"command_id": command_id, "status": "queued"}


@router.get("/commands/{command_id}")
async def get_command(command_id: str, request: Request):
    """Status of a previously submitted command."""
    status = _get_bridge(request).command_result(command_id)
    if status is None:
        raise HTTPException(404, f"Unknown command: {command_id}")
    return status.model_dump(mode="json")


@router.post("/cancel", status_code=202)
async def cancel(request: Request):
    """Request cooperative cancellation at the next tick boundary."""
    bridge = _get_bridge(request)
    bridge.request_cancel()
    return {"status": "cancel_requested"}
