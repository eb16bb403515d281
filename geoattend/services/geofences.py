from __future__ import annotations

import logging
import random
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from geoattend.errors import (
    CodeGenerationError,
    InvalidGeofenceError,
    InvalidTransitionError,
    NotFoundError,
)
from geoattend.models import (
    Employee,
    Geofence,
    GeofenceAssignment,
    GeofenceStatus,
    GeofenceType,
    new_id,
)
from geoattend.services.attendance_calc import WEEKDAY_NAMES, parse_hhmm
from geoattend.services.location import Coordinate, bounding_box, distance_m, geofence_center
from geoattend.services.ports import EmployeePort, GeofencePort, NotificationPort, UnitOfWork
from geoattend.services.tenancy import TenantContext, ensure_owned, for_organization, scope

logger = logging.getLogger("geoattend.geofences")

MIN_RADIUS_M = 50
MAX_RADIUS_M = 10_000
MAX_GRACE_PERIOD_MINUTES = 60
DEFAULT_GRACE_PERIOD_MINUTES = 5

_STATUS_ORDER = {
    GeofenceStatus.ACTIVE: 0,
    GeofenceStatus.INACTIVE: 1,
    GeofenceStatus.ARCHIVED: 2,
}

_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "type",
        "center_lat",
        "center_lon",
        "radius_m",
        "schedule_enabled",
        "work_days",
        "work_start",
        "work_end",
        "entry_notification",
        "exit_notification",
        "auto_check_in",
        "grace_period_minutes",
    }
)


@dataclass
class GeofenceDraft:
    name: str
    center: Coordinate
    radius_m: float
    type: GeofenceType = GeofenceType.CUSTOM
    schedule_enabled: bool = False
    work_days: list[str] = field(default_factory=list)
    work_start: str | None = None
    work_end: str | None = None
    entry_notification: bool = True
    exit_notification: bool = True
    auto_check_in: bool = False
    grace_period_minutes: int = DEFAULT_GRACE_PERIOD_MINUTES
    employee_ids: list[str] = field(default_factory=list)


def validate_geofence_fields(values: Mapping[str, Any]) -> None:
    if "name" in values and not str(values["name"] or "").strip():
        raise InvalidGeofenceError("Geofence name is required.")

    if "radius_m" in values:
        radius = values["radius_m"]
        if radius is None or not MIN_RADIUS_M <= float(radius) <= MAX_RADIUS_M:
            raise InvalidGeofenceError(f"radius_m must be between {MIN_RADIUS_M} and {MAX_RADIUS_M} meters.")

    if "center_lat" in values or "center_lon" in values:
        Coordinate(values.get("center_lat"), values.get("center_lon"))

    if "grace_period_minutes" in values:
        grace = values["grace_period_minutes"]
        if grace is None or not 0 <= int(grace) <= MAX_GRACE_PERIOD_MINUTES:
            raise InvalidGeofenceError(f"grace_period_minutes must be between 0 and {MAX_GRACE_PERIOD_MINUTES}.")

    if "work_days" in values:
        unknown = sorted(set(values["work_days"] or []) - set(WEEKDAY_NAMES))
        if unknown:
            raise InvalidGeofenceError(f"Unknown work days: {', '.join(unknown)}.")

    for key in ("work_start", "work_end"):
        if key in values:
            try:
                parse_hhmm(values[key])
            except ValueError as exc:
                raise InvalidGeofenceError(f"{key}: {exc}") from None

    if values.get("schedule_enabled") and not values.get("work_start"):
        raise InvalidGeofenceError("work_start is required when the schedule is enabled.")


def _code_prefix(name: str) -> str:
    letters = [char for char in name.upper() if char.isalnum()]
    return "".join(letters[:2]).ljust(2, "X")


def _assignment_payload(geofence: Geofence) -> dict[str, Any]:
    return {
        "organization_id": geofence.organization_id,
        "geofence_id": geofence.id,
        "geofence_name": geofence.name,
    }


class GeofenceRegistry:
    def __init__(
        self,
        geofences: GeofencePort,
        employees: EmployeePort,
        uow: UnitOfWork,
        *,
        notifier: NotificationPort | None = None,
        code_attempts: int = 5,
        rng: random.Random | None = None,
    ) -> None:
        self.geofences = geofences
        self.employees = employees
        self.uow = uow
        self.notifier = notifier
        self.code_attempts = max(1, code_attempts)
        self._rng = rng or secrets.SystemRandom()

    def _generate_code(self, context: TenantContext, name: str) -> str:
        prefix = _code_prefix(name)
        for _ in range(self.code_attempts):
            code = f"{prefix}{self._rng.randint(1000, 9999)}"
            if self.geofences.get(scope({"code": code}, context)) is None:
                return code
        logger.error(
            "geofence_code_generation_exhausted",
            extra={"organization_id": context.organization_id, "prefix": prefix, "attempts": self.code_attempts},
        )
        raise CodeGenerationError(f"Could not generate a unique geofence code after {self.code_attempts} attempts.")

    def _notify(self, employee_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(employee_id, event_type, payload)
        except Exception:
            logger.exception(
                "geofence_notification_failed",
                extra={"employee_id": employee_id, "event_type": event_type},
            )

    def _resolve_employee(self, context: TenantContext, employee_id: str) -> Employee:
        employee = self.employees.get(scope({"id": employee_id}, context))
        if employee is None or not employee.is_active:
            raise NotFoundError(f"Employee {employee_id} not found.", code="EMPLOYEE_NOT_FOUND")
        return employee

    def create_geofence(
        self,
        context: TenantContext,
        organization_id: str | None,
        draft: GeofenceDraft,
        *,
        created_by: str | None = None,
    ) -> Geofence:
        ctx = for_organization(context, organization_id)
        values = {
            "name": draft.name,
            "center_lat": draft.center.latitude,
            "center_lon": draft.center.longitude,
            "radius_m": draft.radius_m,
            "schedule_enabled": draft.schedule_enabled,
            "work_days": list(draft.work_days),
            "work_start": draft.work_start,
            "work_end": draft.work_end,
            "grace_period_minutes": draft.grace_period_minutes,
        }
        validate_geofence_fields(values)
        now_utc = datetime.now(timezone.utc)
        geofence = Geofence(
            id=new_id(),
            organization_id=ctx.organization_id,
            code=self._generate_code(ctx, draft.name),
            name=draft.name.strip(),
            type=draft.type,
            center_lat=draft.center.latitude,
            center_lon=draft.center.longitude,
            radius_m=float(draft.radius_m),
            schedule_enabled=draft.schedule_enabled,
            work_days=list(draft.work_days),
            work_start=draft.work_start,
            work_end=draft.work_end,
            entry_notification=draft.entry_notification,
            exit_notification=draft.exit_notification,
            auto_check_in=draft.auto_check_in,
            grace_period_minutes=int(draft.grace_period_minutes),
            status=GeofenceStatus.ACTIVE,
            created_by=created_by,
            created_at=now_utc,
            updated_at=now_utc,
        )
        newly_assigned = self._assign(ctx, geofence, draft.employee_ids, assigned_by=created_by)
        self.geofences.add(geofence)
        self.uow.commit()
        logger.info(
            "geofence_created",
            extra={
                "organization_id": ctx.organization_id,
                "geofence_id": geofence.id,
                "code": geofence.code,
                "assigned_count": len(newly_assigned),
            },
        )
        for employee_id in newly_assigned:
            self._notify(employee_id, "assigned_to_geofence", _assignment_payload(geofence))
        return geofence

    def get_geofence(self, context: TenantContext, organization_id: str | None, geofence_id: str) -> Geofence:
        ctx = for_organization(context, organization_id)
        geofence = self.geofences.get(scope({"id": geofence_id}, ctx))
        if geofence is None:
            raise NotFoundError(f"Geofence {geofence_id} not found.", code="GEOFENCE_NOT_FOUND")
        ensure_owned(geofence, ctx)
        return geofence

    def list_geofences(
        self,
        context: TenantContext,
        organization_id: str | None,
        *,
        status: GeofenceStatus | None = None,
        geofence_type: GeofenceType | None = None,
    ) -> list[Geofence]:
        query: dict[str, Any] = {}
        if status is not None:
            query["status"] = status
        if geofence_type is not None:
            query["type"] = geofence_type
        if organization_id is None and context.is_platform_operator and context.organization_id is None:
            # Explicit platform-wide listing.
            return self.geofences.list(scope(query, context))
        ctx = for_organization(context, organization_id)
        return self.geofences.list(scope(query, ctx))

    def update_geofence(
        self,
        context: TenantContext,
        organization_id: str | None,
        geofence_id: str,
        changes: Mapping[str, Any],
    ) -> Geofence:
        geofence = self.get_geofence(context, organization_id, geofence_id)
        if "organization_id" in changes and changes["organization_id"] != geofence.organization_id:
            raise InvalidGeofenceError("organization_id cannot be changed.")
        if geofence.status == GeofenceStatus.ARCHIVED:
            raise InvalidTransitionError("Archived geofences cannot be modified.", code="GEOFENCE_ARCHIVED")

        unknown = sorted(set(changes) - _UPDATABLE_FIELDS - {"organization_id"})
        if unknown:
            raise InvalidGeofenceError(f"Unsupported geofence fields: {', '.join(unknown)}.")

        merged = {key: getattr(geofence, key) for key in _UPDATABLE_FIELDS}
        merged.update({key: value for key, value in changes.items() if key in _UPDATABLE_FIELDS})
        validate_geofence_fields(merged)

        for key, value in changes.items():
            if key in _UPDATABLE_FIELDS:
                setattr(geofence, key, value)
        geofence.updated_at = datetime.now(timezone.utc)
        self.geofences.save(geofence)
        self.uow.commit()
        return geofence

    def _set_status(
        self,
        context: TenantContext,
        organization_id: str | None,
        geofence_id: str,
        target: GeofenceStatus,
    ) -> Geofence:
        geofence = self.get_geofence(context, organization_id, geofence_id)
        if geofence.status == target:
            return geofence
        if _STATUS_ORDER[target] < _STATUS_ORDER[geofence.status]:
            raise InvalidTransitionError(
                f"Geofence status cannot move from {geofence.status.value} to {target.value}.",
                code="GEOFENCE_STATUS_BACKWARDS",
            )
        previous = geofence.status
        geofence.status = target
        geofence.updated_at = datetime.now(timezone.utc)
        self.geofences.save(geofence)
        self.uow.commit()
        logger.info(
            "geofence_status_changed",
            extra={
                "organization_id": geofence.organization_id,
                "geofence_id": geofence.id,
                "from_status": previous.value,
                "to_status": target.value,
            },
        )
        return geofence

    def deactivate(self, context: TenantContext, organization_id: str | None, geofence_id: str) -> Geofence:
        return self._set_status(context, organization_id, geofence_id, GeofenceStatus.INACTIVE)

    def archive(self, context: TenantContext, organization_id: str | None, geofence_id: str) -> Geofence:
        return self._set_status(context, organization_id, geofence_id, GeofenceStatus.ARCHIVED)

    def _assign(
        self,
        context: TenantContext,
        geofence: Geofence,
        employee_ids: Iterable[str],
        *,
        assigned_by: str | None,
    ) -> list[str]:
        requested = list(dict.fromkeys(employee_ids))
        for employee_id in requested:
            self._resolve_employee(context, employee_id)

        already = geofence.assigned_employee_ids
        newly_assigned: list[str] = []
        now_utc = datetime.now(timezone.utc)
        for employee_id in requested:
            if employee_id in already:
                continue
            geofence.assignments.append(
                GeofenceAssignment(employee_id=employee_id, assigned_at=now_utc, assigned_by=assigned_by)
            )
            newly_assigned.append(employee_id)
        return newly_assigned

    def assign_employees(
        self,
        context: TenantContext,
        organization_id: str | None,
        geofence_id: str,
        employee_ids: Iterable[str],
        *,
        assigned_by: str | None = None,
    ) -> Geofence:
        geofence = self.get_geofence(context, organization_id, geofence_id)
        if geofence.status == GeofenceStatus.ARCHIVED:
            raise InvalidTransitionError("Archived geofences cannot take new assignments.", code="GEOFENCE_ARCHIVED")
        ctx = for_organization(context, geofence.organization_id)
        newly_assigned = self._assign(ctx, geofence, employee_ids, assigned_by=assigned_by)
        if newly_assigned:
            self.geofences.save(geofence)
            self.uow.commit()
        for employee_id in newly_assigned:
            self._notify(employee_id, "assigned_to_geofence", _assignment_payload(geofence))
        return geofence

    def assign_employee(
        self,
        context: TenantContext,
        organization_id: str | None,
        geofence_id: str,
        employee_id: str,
        *,
        assigned_by: str | None = None,
    ) -> Geofence:
        return self.assign_employees(
            context,
            organization_id,
            geofence_id,
            [employee_id],
            assigned_by=assigned_by,
        )

    def remove_employee(
        self,
        context: TenantContext,
        organization_id: str | None,
        geofence_id: str,
        employee_id: str,
    ) -> Geofence:
        geofence = self.get_geofence(context, organization_id, geofence_id)
        remaining = [item for item in geofence.assignments if item.employee_id != employee_id]
        if len(remaining) == len(geofence.assignments):
            return geofence
        geofence.assignments = remaining
        self.geofences.save(geofence)
        self.uow.commit()
        self._notify(employee_id, "removed_from_geofence", _assignment_payload(geofence))
        return geofence

    def find_candidates_with_distance(
        self,
        context: TenantContext,
        organization_id: str | None,
        point: Coordinate,
        max_distance_m: float,
    ) -> list[tuple[Geofence, float]]:
        ctx = for_organization(context, organization_id)
        box = bounding_box(point, max_distance_m)
        rows = self.geofences.list_within(scope({"status": GeofenceStatus.ACTIVE}, ctx), box)
        ranked: list[tuple[Geofence, float]] = []
        for geofence in rows:
            ensure_owned(geofence, ctx)
            distance_value = distance_m(point, geofence_center(geofence))
            if distance_value <= max_distance_m:
                ranked.append((geofence, distance_value))
        ranked.sort(key=lambda item: (item[1], item[0].id))
        return ranked

    def find_candidates(
        self,
        context: TenantContext,
        organization_id: str | None,
        point: Coordinate,
        max_distance_m: float,
    ) -> list[Geofence]:
        return [
            geofence
            for geofence, _ in self.find_candidates_with_distance(context, organization_id, point, max_distance_m)
        ]

    def find_by_employee(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
    ) -> list[Geofence]:
        ctx = for_organization(context, organization_id)
        return self.geofences.list_for_employee(scope({"status": GeofenceStatus.ACTIVE}, ctx), employee_id)
