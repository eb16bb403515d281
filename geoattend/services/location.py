from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, degrees, isfinite, pi, radians, sin, sqrt
from typing import Any

from geoattend.errors import InvalidCoordinateError

EARTH_RADIUS_M = 6371000.0


def validate_coordinate(latitude: Any, longitude: Any) -> tuple[float, float]:
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinateError("Coordinate must be numeric.") from None
    if not (isfinite(lat) and isfinite(lon)):
        raise InvalidCoordinateError("Coordinate must be finite.")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinateError(f"Latitude {lat} is outside [-90, 90].")
    if not -180.0 <= lon <= 180.0:
        raise InvalidCoordinateError(f"Longitude {lon} is outside [-180, 180].")
    return lat, lon


@dataclass(frozen=True, slots=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        lat, lon = validate_coordinate(self.latitude, self.longitude)
        object.__setattr__(self, "latitude", lat)
        object.__setattr__(self, "longitude", lon)

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True, slots=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    # None when the box wraps a pole or the antimeridian.
    min_lon: float | None
    max_lon: float | None


def distance_m(a: Coordinate, b: Coordinate) -> float:
    lat1, lon1 = validate_coordinate(a.latitude, a.longitude)
    lat2, lon2 = validate_coordinate(b.latitude, b.longitude)

    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    h = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(min(1.0, sqrt(h)))
    return EARTH_RADIUS_M * c


def within_radius(distance_value: float, radius_m: float) -> bool:
    """Boundary points count as inside."""
    return distance_value <= radius_m


def is_inside(point: Coordinate, center: Coordinate, radius_m: float) -> bool:
    return within_radius(distance_m(point, center), radius_m)


def bounding_box(center: Coordinate, radius_m: float) -> BoundingBox:
    angular = max(0.0, float(radius_m)) / EARTH_RADIUS_M
    delta_lat = degrees(angular)
    min_lat = center.latitude - delta_lat
    max_lat = center.latitude + delta_lat
    if min_lat <= -90.0 or max_lat >= 90.0 or angular >= pi / 2:
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), None, None)

    delta_lon = degrees(asin(min(1.0, sin(angular) / cos(radians(center.latitude)))))
    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon
    if min_lon < -180.0 or max_lon > 180.0:
        return BoundingBox(min_lat, max_lat, None, None)
    return BoundingBox(min_lat, max_lat, min_lon, max_lon)


def geofence_center(geofence: Any) -> Coordinate:
    return Coordinate(geofence.center_lat, geofence.center_lon)
