"""Environment model: wind, precipitation, terrain and RF interference.

The environment is immutable within a tick.  Scheduled scenario events do not
mutate it; ``Environment.apply()`` returns a replacement that the orchestrator
swaps in at the tick boundary.  Physics reads wind and terrain, the radio
model reads precipitation, interference and the noise floor.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

from .models import Vec3, ZERO

if TYPE_CHECKING:
    from fleetsim.geo import GeoReference


class PrecipitationKind(str, Enum):
    NONE = "none"
    DRIZZLE = "drizzle"
    RAIN = "rain"
    SNOW = "snow"
    HAIL = "hail"
    FOG = "fog"


# Relative RF impact per mm/h of intensity.
_PRECIP_FACTORS: dict[PrecipitationKind, float] = {
    PrecipitationKind.NONE: 0.0,
    PrecipitationKind.DRIZZLE: 0.6,
    PrecipitationKind.RAIN: 1.0,
    PrecipitationKind.SNOW: 0.7,
    PrecipitationKind.HAIL: 1.5,
    PrecipitationKind.FOG: 0.3,
}

# Noise floor increase per unit of precipitation severity.
NOISE_PER_SEVERITY = 0.002
MAX_NOISE_FLOOR = 0.5

# Reference height for the wind shear power law.
WIND_REFERENCE_HEIGHT_M = 10.0


def wind_vector(speed_mps: float, from_deg: float) -> Vec3:
    """ENU wind velocity for a wind blowing *from* ``from_deg`` (clockwise from North)."""
    theta = math.radians(from_deg)
    return (-speed_mps * math.sin(theta), -speed_mps * math.cos(theta), 0.0)


@dataclass(frozen=True)
class Precipitation:
    kind: PrecipitationKind = PrecipitationKind.NONE
    intensity_mm_h: float = 0.0

    @property
    def severity(self) -> float:
        return _PRECIP_FACTORS[self.kind] * max(0.0, self.intensity_mm_h)


@dataclass(frozen=True, eq=False)
class Terrain:
    """Ground elevation over the operating area.

    Either flat (``base_elevation_m`` everywhere) or a regular grid of
    elevations whose cell (0, 0) centre sits at local (origin_x, origin_y).
    Rows run northward, columns eastward.  Samples outside the grid clamp to
    the nearest edge.
    """

    base_elevation_m: float = 0.0
    grid: np.ndarray | None = None
    origin_x: float = 0.0
    origin_y: float = 0.0
    cell_size_m: float = 10.0

    def elevation_at(self, x: float, y: float) -> float:
        if self.grid is None:
            return self.base_elevation_m
        rows, cols = self.grid.shape
        gx = min(max((x - self.origin_x) / self.cell_size_m, 0.0), cols - 1.0)
        gy = min(max((y - self.origin_y) / self.cell_size_m, 0.0), rows - 1.0)
        c0 = int(math.floor(gx))
        r0 = int(math.floor(gy))
        c1 = min(c0 + 1, cols - 1)
        r1 = min(r0 + 1, rows - 1)
        fx = gx - c0
        fy = gy - r0
        g = self.grid
        south = g[r0, c0] * (1.0 - fx) + g[r0, c1] * fx
        north = g[r1, c0] * (1.0 - fx) + g[r1, c1] * fx
        return float(south * (1.0 - fy) + north * fy)


@dataclass(frozen=True)
class InterferenceSource:
    source_id: str
    position: Vec3
    strength: float  # dimensionless; 1.0 doubles path excess loss at the source
    radius_m: float = 100.0

    def influence(self, point: Vec3) -> float:
        dx = point[0] - self.position[0]
        dy = point[1] - self.position[1]
        dz = point[2] - self.position[2]
        d2 = dx * dx + dy * dy + dz * dz
        return self.strength / (1.0 + d2 / (self.radius_m * self.radius_m))


@dataclass(frozen=True)
class Environment:
    wind: Vec3 = ZERO
    wind_shear_exponent: float = 0.0
    precipitation: Precipitation = field(default_factory=Precipitation)
    terrain: Terrain = field(default_factory=Terrain)
    interference: tuple[InterferenceSource, ...] = ()
    noise_floor: float = 0.01  # packet loss probability at zero distance, clear air

    # -- physics reads ------------------------------------------------------

    def ground_at(self, x: float, y: float) -> float:
        return self.terrain.elevation_at(x, y)

    def wind_at(self, position: Vec3) -> Vec3:
        """Wind at a point; uniform unless a shear exponent is configured."""
        if self.wind_shear_exponent <= 0.0 or self.wind == ZERO:
            return self.wind
        agl = max(0.0, position[2] - self.ground_at(position[0], position[1]))
        scale = (max(agl, 0.1) / WIND_REFERENCE_HEIGHT_M) ** self.wind_shear_exponent
        return (self.wind[0] * scale, self.wind[1] * scale, self.wind[2] * scale)

    # -- radio reads --------------------------------------------------------

    @property
    def radio_noise_floor(self) -> float:
        raised = self.noise_floor + NOISE_PER_SEVERITY * self.precipitation.severity
        return min(MAX_NOISE_FLOOR, max(0.0, raised))

    def interference_level(self, a: Vec3, b: Vec3) -> float:
        """Strongest interference felt by either endpoint of a link."""
        total = 0.0
        for source in self.interference:
            total += max(source.influence(a), source.influence(b))
        return total

    # -- scheduled mutation -------------------------------------------------

    def apply(self, kind: str, params: dict[str, Any], geo: GeoReference) -> Environment:
        """Return a new environment with one scheduled event applied."""
        if kind == "set_wind":
            return replace(
                self,
                wind=wind_vector(params["speed_mps"], params.get("direction_deg", 0.0)),
                wind_shear_exponent=params.get("shear_exponent", self.wind_shear_exponent),
            )
        if kind == "set_precipitation":
            return replace(self, precipitation=Precipitation(
                kind=PrecipitationKind(params.get("kind", "rain")),
                intensity_mm_h=float(params.get("intensity_mm_h", 0.0)),
            ))
        if kind == "add_interference":
            source = InterferenceSource(
                source_id=params["id"],
                position=geo.to_local(params["lat"], params["lon"], params.get("alt", 0.0)),
                strength=float(params["strength"]),
                radius_m=float(params.get("radius_m", 100.0)),
            )
            kept = tuple(s for s in self.interference if s.source_id != source.source_id)
            return replace(self, interference=kept + (source,))
        if kind == "remove_interference":
            return replace(self, interference=tuple(
                s for s in self.interference if s.source_id != params["id"]
            ))
        raise ValueError(f"Not an environment event: {kind}")

    @classmethod
    def from_spec(cls, spec, geo: GeoReference) -> Environment:
        """Build from a ``scenarios.schema.EnvironmentSpec``."""
        terrain_spec = spec.terrain
        if terrain_spec.elevations:
            sw_x, sw_y, _ = geo.to_local(terrain_spec.south_west.lat, terrain_spec.south_west.lon)
            terrain = Terrain(
                base_elevation_m=terrain_spec.elevation_m,
                grid=np.asarray(terrain_spec.elevations, dtype=float),
                origin_x=sw_x,
                origin_y=sw_y,
                cell_size_m=terrain_spec.cell_size_m,
            )
        else:
            terrain = Terrain(base_elevation_m=terrain_spec.elevation_m)

        sources = tuple(
            InterferenceSource(
                source_id=s.id,
                position=geo.to_local(s.position.lat, s.position.lon, s.position.alt),
                strength=s.strength,
                radius_m=s.radius_m,
            )
            for s in spec.interference
        )
        return cls(
            wind=wind_vector(spec.wind.speed_mps, spec.wind.direction_deg),
            wind_shear_exponent=spec.wind.shear_exponent,
            precipitation=Precipitation(
                kind=PrecipitationKind(spec.precipitation.kind),
                intensity_mm_h=spec.precipitation.intensity_mm_h,
            ),
            terrain=terrain,
            interference=sources,
            noise_floor=spec.noise_floor,
        )
