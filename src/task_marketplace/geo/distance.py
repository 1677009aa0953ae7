"""Great-circle distance and bounding-box helpers."""

from __future__ import annotations

import math
from dataclasses import dataclass

from task_marketplace.domain.models import Coordinates

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LATITUDE = 111.0


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Distance in km on a sphere of mean Earth radius."""
    if a == b:
        return 0.0
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    # Clamp guards asin against rounding just above 1.0 for antipodal points.
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, point: Coordinates) -> bool:
        return (
            self.min_lat <= point.latitude <= self.max_lat
            and self.min_lon <= point.longitude <= self.max_lon
        )

    def as_viewbox(self) -> str:
        """Nominatim viewbox order: left, top, right, bottom."""
        return f"{self.min_lon},{self.max_lat},{self.max_lon},{self.min_lat}"


def bounding_box(center: Coordinates, radius_km: float) -> BoundingBox:
    lat_delta = radius_km / KM_PER_DEGREE_LATITUDE
    cos_lat = math.cos(math.radians(center.latitude))
    # Near the poles a degree of longitude shrinks towards zero width.
    lon_delta = 180.0 if cos_lat < 1e-9 else radius_km / (KM_PER_DEGREE_LATITUDE * cos_lat)
    return BoundingBox(
        min_lat=max(-90.0, center.latitude - lat_delta),
        max_lat=min(90.0, center.latitude + lat_delta),
        min_lon=max(-180.0, center.longitude - lon_delta),
        max_lon=min(180.0, center.longitude + lon_delta),
    )
