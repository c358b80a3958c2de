"""Geo-reference: coordinate transforms between lat/lon and local metres.

Physics runs in local metres; lat/lon is computed on serialization so every
telemetry snapshot carries real coordinates.

Convention:
    - Local origin (0, 0, 0) = scenario origin (lat, lon, alt)
    - 1 local unit = 1 metre
    - +X = East, +Y = North, +Z = Up
    - Heading/yaw 0 = North, clockwise

Each scenario owns its own GeoReference; there is no process-wide reference
point, so several scenarios can run side by side.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

METERS_PER_DEG_LAT = 111_320.0


@dataclass(frozen=True)
class GeoReference:
    """A real-world reference point that anchors local coordinates."""

    lat: float = 0.0
    lon: float = 0.0
    alt: float = 0.0  # metres above the datum

    @property
    def meters_per_deg_lon(self) -> float:
        return METERS_PER_DEG_LAT * math.cos(math.radians(self.lat))

    def to_latlon(self, x: float, y: float, z: float = 0.0) -> tuple[float, float, float]:
        """Convert local metres (x=East, y=North, z=Up) to (lat, lon, alt)."""
        lat = self.lat + y / METERS_PER_DEG_LAT
        lon = self.lon + x / self.meters_per_deg_lon
        return (lat, lon, self.alt + z)

    def to_local(self, lat: float, lon: float, alt: float = 0.0) -> tuple[float, float, float]:
        """Convert (lat, lon, alt) to local metres (x=East, y=North, z=Up)."""
        y = (lat - self.lat) * METERS_PER_DEG_LAT
        x = (lon - self.lon) * self.meters_per_deg_lon
        return (x, y, alt - self.alt)
