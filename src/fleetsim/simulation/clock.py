"""SimulationClock: tick index, fixed step and wall-clock pacing."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable


class Pacing(str, Enum):
    REALTIME = "realtime"  # track wall-clock time, for interactive runs
    ACCELERATED = "accelerated"  # back-to-back ticks, for CI regression


class SimulationClock:
    """Owned exclusively by the orchestrator.

    In realtime pacing tick ``n`` completes no earlier than ``start + n * dt * time_scale``
    wall seconds, so ``time_scale`` below 1.0 runs faster than real time.
    """

    def __init__(
        self,
        dt: float,
        pacing: Pacing = Pacing.ACCELERATED,
        time_scale: float = 1.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if dt <= 0.0:
            raise ValueError(f"dt must be positive, got {dt}")
        if time_scale <= 0.0:
            raise ValueError(f"time_scale must be positive, got {time_scale}")
        self.dt = dt
        self.pacing = Pacing(pacing)
        self.time_scale = time_scale
        self.tick = 0
        self._monotonic = monotonic
        self._wall_start: float | None = None

    @property
    def time_s(self) -> float:
        """Simulated seconds since scenario start."""
        return self.tick * self.dt

    def start(self) -> None:
        self._wall_start = self._monotonic()

    def advance(self) -> int:
        self.tick += 1
        return self.tick

    @property
    def wall_elapsed_s(self) -> float:
        if self._wall_start is None:
            return 0.0
        return self._monotonic() - self._wall_start

    def wait_next(self, cancel: threading.Event) -> bool:
        """Block until the wall-clock time of the current tick; return True if cancelled."""
        if self.pacing is Pacing.ACCELERATED or self._wall_start is None:
            return cancel.is_set()
        deadline = self._wall_start + self.tick * self.dt * self.time_scale
        remaining = deadline - self._monotonic()
        if remaining > 0.0:
            return cancel.wait(remaining)
        return cancel.is_set()
