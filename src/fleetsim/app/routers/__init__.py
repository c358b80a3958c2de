"""API routers."""

from .results import router as results_router
from .sim import router as sim_router

__all__ = ["results_router", "sim_router"]
