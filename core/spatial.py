"""
Spatial and geometry utilities.

Centralizes GeoJSON point handling and coordinate validation used by the
visit detection core.
"""

from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


class GeometryService:
    """Authoritative geometry operations for the application."""

    @staticmethod
    def validate_coordinate_pair(
        coord: Sequence[Any],
    ) -> tuple[bool, list[float] | None]:
        """Validate a [lon, lat] coordinate pair."""
        if not isinstance(coord, (list, tuple)) or len(coord) < 2:
            return False, None
        try:
            lon = float(coord[0])
            lat = float(coord[1])
        except (TypeError, ValueError, IndexError):
            return False, None
        if math.isnan(lon) or math.isnan(lat):
            return False, None
        if not (-180 <= lon <= 180 and -90 <= lat <= 90):
            return False, None
        return True, [lon, lat]

    @staticmethod
    def parse_geojson(value: Any) -> dict[str, Any] | None:
        """Parse GeoJSON geometry from a dict or JSON string."""
        if value is None:
            return None
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return None
        if isinstance(value, dict):
            if value.get("type") == "Feature":
                geometry = value.get("geometry")
                return geometry if isinstance(geometry, dict) else None
            if "type" in value and "coordinates" in value:
                return value
        return None

    @staticmethod
    def point_geojson(lon: float, lat: float) -> dict[str, Any]:
        """Build a GeoJSON Point for a longitude/latitude pair."""
        return {"type": "Point", "coordinates": [float(lon), float(lat)]}

    @staticmethod
    def point_coordinates(value: Any) -> tuple[float, float] | None:
        """Extract (lon, lat) from a GeoJSON Point, or None if not a valid point."""
        geometry = GeometryService.parse_geojson(value)
        if not geometry or geometry.get("type") != "Point":
            return None
        valid, coords = GeometryService.validate_coordinate_pair(
            geometry.get("coordinates") or [],
        )
        if not valid or coords is None:
            return None
        return coords[0], coords[1]


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp value into the inclusive range [lower, upper]."""
    return max(lower, min(value, upper))
