from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status

from geoattend.audit import record_audit
from geoattend.deps import Services, get_services
from geoattend.models import AuditActorType, GeofenceStatus, GeofenceType
from geoattend.routers.common import audit_origin, geofence_read, to_coordinate
from geoattend.schemas import (
    GeofenceAssignRequest,
    GeofenceCreate,
    GeofenceRead,
    GeofenceUpdate,
    MembershipCheckRequest,
    MembershipRead,
)
from geoattend.security import ensure_self_or_admin, get_tenant_context, require_admin
from geoattend.services.geofences import GeofenceDraft
from geoattend.services.tenancy import TenantContext

router = APIRouter(prefix="/api/geofences", tags=["geofences"])


def _audit(
    services: Services,
    request: Request,
    context: TenantContext,
    *,
    action: str,
    organization_id: str,
    geofence_id: str,
    details: dict[str, Any] | None = None,
) -> None:
    request.state.geofence_id = geofence_id
    record_audit(
        services.db,
        context,
        actor_type=AuditActorType.ADMIN,
        action=action,
        organization_id=organization_id,
        entity_type="geofence",
        entity_id=geofence_id,
        origin=audit_origin(request),
        details=details,
    )


@router.post("", response_model=GeofenceRead, status_code=status.HTTP_201_CREATED)
def create_geofence(
    payload: GeofenceCreate,
    request: Request,
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> GeofenceRead:
    draft = GeofenceDraft(
        name=payload.name,
        center=to_coordinate(payload.center),
        radius_m=payload.radius_m,
        type=payload.type,
        schedule_enabled=payload.schedule.enabled,
        work_days=list(payload.schedule.work_days),
        work_start=payload.schedule.start_time,
        work_end=payload.schedule.end_time,
        entry_notification=payload.settings.entry_notification,
        exit_notification=payload.settings.exit_notification,
        auto_check_in=payload.settings.auto_check_in,
        grace_period_minutes=payload.settings.grace_period_minutes,
        employee_ids=list(payload.employee_ids),
    )
    geofence = services.registry.create_geofence(
        context,
        payload.organization_id,
        draft,
        created_by=context.actor_id,
    )
    _audit(
        services,
        request,
        context,
        action="GEOFENCE_CREATED",
        organization_id=geofence.organization_id,
        geofence_id=geofence.id,
        details={"code": geofence.code, "assigned": sorted(geofence.assigned_employee_ids)},
    )
    return geofence_read(geofence)


@router.get("", response_model=list[GeofenceRead])
def list_geofences(
    organization_id: str | None = Query(default=None),
    status_filter: GeofenceStatus | None = Query(default=None, alias="status"),
    geofence_type: GeofenceType | None = Query(default=None, alias="type"),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> list[GeofenceRead]:
    geofences = services.registry.list_geofences(
        context,
        organization_id,
        status=status_filter,
        geofence_type=geofence_type,
    )
    return [geofence_read(item) for item in geofences]


@router.post("/membership-check", response_model=list[MembershipRead])
def check_membership(
    payload: MembershipCheckRequest,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> list[MembershipRead]:
    if payload.employee_id is not None:
        ensure_self_or_admin(context, payload.employee_id)
    results = services.evaluator.evaluate(
        context,
        organization_id,
        payload.employee_id,
        to_coordinate(payload.location),
    )
    return [MembershipRead(**item.to_dict()) for item in results]


@router.get("/{geofence_id}", response_model=GeofenceRead)
def get_geofence(
    geofence_id: str,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> GeofenceRead:
    return geofence_read(services.registry.get_geofence(context, organization_id, geofence_id))


@router.patch("/{geofence_id}", response_model=GeofenceRead)
def update_geofence(
    geofence_id: str,
    payload: GeofenceUpdate,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> GeofenceRead:
    changes = payload.to_changes()
    geofence = services.registry.update_geofence(context, organization_id, geofence_id, changes)
    _audit(
        services,
        request,
        context,
        action="GEOFENCE_UPDATED",
        organization_id=geofence.organization_id,
        geofence_id=geofence.id,
        details={"fields": sorted(changes)},
    )
    return geofence_read(geofence)


@router.post("/{geofence_id}/deactivate", response_model=GeofenceRead)
def deactivate_geofence(
    geofence_id: str,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> GeofenceRead:
    geofence = services.registry.deactivate(context, organization_id, geofence_id)
    _audit(
        services,
        request,
        context,
        action="GEOFENCE_DEACTIVATED",
        organization_id=geofence.organization_id,
        geofence_id=geofence.id,
    )
    return geofence_read(geofence)


@router.post("/{geofence_id}/archive", response_model=GeofenceRead)
def archive_geofence(
    geofence_id: str,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> GeofenceRead:
    geofence = services.registry.archive(context, organization_id, geofence_id)
    _audit(
        services,
        request,
        context,
        action="GEOFENCE_ARCHIVED",
        organization_id=geofence.organization_id,
        geofence_id=geofence.id,
    )
    return geofence_read(geofence)


@router.post("/{geofence_id}/employees", response_model=GeofenceRead)
def assign_employees(
    geofence_id: str,
    payload: GeofenceAssignRequest,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> GeofenceRead:
    geofence = services.registry.assign_employees(
        context,
        organization_id,
        geofence_id,
        payload.employee_ids,
        assigned_by=context.actor_id,
    )
    _audit(
        services,
        request,
        context,
        action="GEOFENCE_EMPLOYEES_ASSIGNED",
        organization_id=geofence.organization_id,
        geofence_id=geofence.id,
        details={"employee_ids": list(payload.employee_ids)},
    )
    return geofence_read(geofence)


@router.delete("/{geofence_id}/employees/{employee_id}", response_model=GeofenceRead)
def remove_employee(
    geofence_id: str,
    employee_id: str,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> GeofenceRead:
    geofence = services.registry.remove_employee(context, organization_id, geofence_id, employee_id)
    _audit(
        services,
        request,
        context,
        action="GEOFENCE_EMPLOYEE_REMOVED",
        organization_id=geofence.organization_id,
        geofence_id=geofence.id,
        details={"employee_id": employee_id},
    )
    return geofence_read(geofence)
