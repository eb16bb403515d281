from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from geoattend.models import Geofence
from geoattend.services.geofences import GeofenceRegistry
from geoattend.services.location import Coordinate, distance_m, geofence_center, within_radius
from geoattend.services.tenancy import TenantContext

DEFAULT_CANDIDATE_RADIUS_M = 10_000.0


@dataclass(frozen=True)
class MembershipResult:
    geofence_id: str
    name: str
    is_inside: bool
    distance_m: float
    radius_m: float
    geofence: Geofence = field(repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "geofence_id": self.geofence_id,
            "name": self.name,
            "is_inside": self.is_inside,
            "distance_m": round(self.distance_m, 2),
            "radius_m": self.radius_m,
        }


def evaluate_geofence(
    geofence: Geofence,
    point: Coordinate,
    *,
    distance_value: float | None = None,
) -> MembershipResult:
    if distance_value is None:
        distance_value = distance_m(point, geofence_center(geofence))
    return MembershipResult(
        geofence_id=geofence.id,
        name=geofence.name,
        is_inside=within_radius(distance_value, geofence.radius_m),
        distance_m=distance_value,
        radius_m=geofence.radius_m,
        geofence=geofence,
    )


class MembershipEvaluator:
    def __init__(self, registry: GeofenceRegistry, *, candidate_radius_m: float = DEFAULT_CANDIDATE_RADIUS_M) -> None:
        self.registry = registry
        self.candidate_radius_m = candidate_radius_m

    def evaluate(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str | None,
        point: Coordinate,
    ) -> list[MembershipResult]:
        candidates = self.registry.find_candidates_with_distance(
            context,
            organization_id,
            point,
            self.candidate_radius_m,
        )
        results: list[MembershipResult] = []
        for geofence, distance_value in candidates:
            if employee_id is not None and employee_id not in geofence.assigned_employee_ids:
                continue
            results.append(evaluate_geofence(geofence, point, distance_value=distance_value))
        return results
