"""fleetsim HTTP API.

A thin FastAPI surface over a TelemetryBridge and the result archive.  The
app holds no simulation state of its own; the orchestrator runs on its own
thread and the handlers only use the Bridge.
"""

from __future__ import annotations

import threading
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from loguru import logger

from fleetsim.scenarios.library import ResultArchive
from fleetsim.simulation.bridge import TelemetryBridge

from .routers import results_router, sim_router


def create_app(bridge: TelemetryBridge, results_dir: str | Path | None = None) -> FastAPI:
    """Build the API for one bridge (and, optionally, an archive directory)."""
    app = FastAPI(
        title="fleetsim",
        description="Drone fleet simulation engine",
        version="0.1.0",
    )
    app.state.bridge = bridge
    app.state.archive = ResultArchive(results_dir) if results_dir is not None else None
    app.include_router(sim_router)
    app.include_router(results_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


class APIServer:
    """Runs uvicorn for the app on a daemon thread beside the tick loop."""

    def __init__(self, app: FastAPI, host: str = "127.0.0.1", port: int = 8080) -> None:
        config = uvicorn.Config(app, host=host, port=port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._thread: threading.Thread | None = None
        self.host = host
        self.port = port

    def start(self) -> None:
        self._thread = threading.Thread(target=self._server.run, name="fleetsim-api", daemon=True)
        self._thread.start()
        logger.info(f"HTTP API listening on http://{self.host}:{self.port}")

    def stop(self) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
