"""Archived scenario results API."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

router = APIRouter(prefix="/api/results", tags=["results"])


def _get_archive(request: Request):
    archive = getattr(request.app.state, "archive", None)
    if archive is None:
        raise HTTPException(503, "Result archive not available")
    return archive


@router.get("")
async def list_results(request: Request, scenario: str | None = None):
    """Summaries of archived runs, newest first."""
    results = _get_archive(request).list(scenario)
    return [
        {
            "run_id": r.run_id,
            "scenario_name": r.scenario_name,
            "outcome": r.outcome.value,
            "reason": r.reason,
            "sim_time_s": r.sim_time_s,
            "started_at": r.started_at,
        }
        for r in results
    ]


@router.get("/{run_id}")
async def get_result(run_id: str, request: Request):
    result = _get_archive(request).get(run_id)
    if result is None:
        raise HTTPException(404, f"Result not found: {run_id}")
    return result.model_dump(mode="json")
