from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt
from typing import Iterable

from pointage.models import Worksite

EARTH_RADIUS_M = 6371000.0


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    return EARTH_RADIUS_M * 2 * asin(sqrt(a))


@dataclass(frozen=True)
class GeofenceResult:
    inside: bool
    worksite_id: int | None
    worksite_name: str | None
    distance_m: float | None
    radius_m: int | None

    def as_details(self) -> dict[str, float | int | str | None]:
        return {
            "worksite_id": self.worksite_id,
            "worksite_name": self.worksite_name,
            "distance_m": None if self.distance_m is None else round(self.distance_m, 2),
            "radius_m": self.radius_m,
        }


def evaluate_worksites(
    worksites: Iterable[Worksite],
    lat: float | None,
    lon: float | None,
) -> GeofenceResult | None:
    """Match a position against the nearest active worksite.

    Returns None when there is nothing to evaluate (no coordinates or no
    active site).
    """
    if lat is None or lon is None:
        return None

    nearest: tuple[float, Worksite] | None = None
    for site in worksites:
        if not site.is_active:
            continue
        distance_value = distance_m(site.lat, site.lon, lat, lon)
        if distance_value <= site.radius_m:
            return GeofenceResult(True, site.id, site.name, distance_value, site.radius_m)
        if nearest is None or distance_value < nearest[0]:
            nearest = (distance_value, site)

    if nearest is None:
        return None
    distance_value, site = nearest
    return GeofenceResult(False, site.id, site.name, distance_value, site.radius_m)
