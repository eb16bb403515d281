from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status

from geoattend.audit import record_audit
from geoattend.deps import Services, get_services
from geoattend.models import AttendanceEvent, AuditActorType
from geoattend.routers.common import audit_origin, event_read, state_read, time_range, to_coordinate
from geoattend.schemas import (
    AttendanceEventRead,
    AttendanceStateRead,
    AttendanceStatsRead,
    AutoCheckInUpdateRequest,
    BreakRequest,
    EmployeeRegisterRequest,
    GeofenceActivityRead,
    LocationUpdateRequest,
    LocationUpdateResponse,
    ManualAttendanceRequest,
    MembershipRead,
)
from geoattend.security import ensure_self_or_admin, get_tenant_context, is_admin, require_admin
from geoattend.services.tenancy import TenantContext

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


def _audit_event(
    services: Services,
    request: Request,
    context: TenantContext,
    event: AttendanceEvent,
) -> None:
    request.state.employee_id = event.employee_id
    request.state.event_id = event.id
    record_audit(
        services.db,
        context,
        actor_type=AuditActorType.ADMIN if is_admin(context) else AuditActorType.EMPLOYEE,
        action="ATTENDANCE_EVENT_CREATED",
        organization_id=event.organization_id,
        entity_type="attendance_event",
        entity_id=event.id,
        origin=audit_origin(request),
        details={
            "event_type": event.type.value,
            "source": event.source.value,
            "geofence_id": event.geofence_id,
            "flags": event.flags or {},
        },
    )


@router.post("/employees", response_model=AttendanceStateRead, status_code=status.HTTP_201_CREATED)
def register_employee(
    payload: EmployeeRegisterRequest,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> AttendanceStateRead:
    state = services.attendance.register_employee(
        context,
        organization_id,
        payload.id,
        payload.full_name,
        auto_check_in_enabled=payload.auto_check_in_enabled,
    )
    request.state.employee_id = state.employee_id
    record_audit(
        services.db,
        context,
        actor_type=AuditActorType.ADMIN,
        action="EMPLOYEE_REGISTERED",
        organization_id=state.organization_id,
        entity_type="employee",
        entity_id=state.employee_id,
        origin=audit_origin(request),
    )
    return state_read(state)


@router.put("/employees/{employee_id}/auto-check-in", response_model=AttendanceStateRead)
def update_auto_check_in(
    employee_id: str,
    payload: AutoCheckInUpdateRequest,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> AttendanceStateRead:
    ensure_self_or_admin(context, employee_id)
    state = services.attendance.set_auto_check_in(context, organization_id, employee_id, payload.enabled)
    return state_read(state)


@router.post("/location", response_model=LocationUpdateResponse)
def report_location(
    payload: LocationUpdateRequest,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> LocationUpdateResponse:
    ensure_self_or_admin(context, payload.employee_id)
    request.state.employee_id = payload.employee_id
    result = services.attendance.handle_location_update(
        context,
        organization_id,
        payload.employee_id,
        to_coordinate(payload.location),
        payload.ts_utc,
    )
    for event in result.events:
        _audit_event(services, request, context, event)
    return LocationUpdateResponse(
        state=state_read(result.state),
        events=[event_read(event) for event in result.events],
        memberships=[MembershipRead(**item.to_dict()) for item in result.memberships],
        ignored=result.ignored,
    )


@router.post("/check-in", response_model=AttendanceEventRead, status_code=status.HTTP_201_CREATED)
def check_in(
    payload: ManualAttendanceRequest,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> AttendanceEventRead:
    ensure_self_or_admin(context, payload.employee_id)
    event = services.attendance.manual_check_in(
        context,
        organization_id,
        payload.employee_id,
        payload.geofence_id,
        to_coordinate(payload.location),
        actor_id=context.actor_id,
        ts_utc=payload.ts_utc,
    )
    _audit_event(services, request, context, event)
    return event_read(event)


@router.post("/check-out", response_model=AttendanceEventRead, status_code=status.HTTP_201_CREATED)
def check_out(
    payload: ManualAttendanceRequest,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> AttendanceEventRead:
    ensure_self_or_admin(context, payload.employee_id)
    event = services.attendance.manual_check_out(
        context,
        organization_id,
        payload.employee_id,
        payload.geofence_id,
        to_coordinate(payload.location),
        actor_id=context.actor_id,
        ts_utc=payload.ts_utc,
    )
    _audit_event(services, request, context, event)
    return event_read(event)


@router.post("/breaks/start", response_model=AttendanceEventRead, status_code=status.HTTP_201_CREATED)
def start_break(
    payload: BreakRequest,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> AttendanceEventRead:
    ensure_self_or_admin(context, payload.employee_id)
    event = services.attendance.start_break(
        context,
        organization_id,
        payload.employee_id,
        point=to_coordinate(payload.location) if payload.location is not None else None,
        actor_id=context.actor_id,
        ts_utc=payload.ts_utc,
    )
    _audit_event(services, request, context, event)
    return event_read(event)


@router.post("/breaks/end", response_model=AttendanceEventRead, status_code=status.HTTP_201_CREATED)
def end_break(
    payload: BreakRequest,
    request: Request,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> AttendanceEventRead:
    ensure_self_or_admin(context, payload.employee_id)
    event = services.attendance.end_break(
        context,
        organization_id,
        payload.employee_id,
        point=to_coordinate(payload.location) if payload.location is not None else None,
        actor_id=context.actor_id,
        ts_utc=payload.ts_utc,
    )
    _audit_event(services, request, context, event)
    return event_read(event)


@router.get("/employees/{employee_id}/state", response_model=AttendanceStateRead)
def get_state(
    employee_id: str,
    organization_id: str | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> AttendanceStateRead:
    ensure_self_or_admin(context, employee_id)
    return state_read(services.attendance.get_state(context, organization_id, employee_id))


@router.get("/employees/{employee_id}/events", response_model=list[AttendanceEventRead])
def list_employee_events(
    employee_id: str,
    organization_id: str | None = Query(default=None),
    ts_from: datetime | None = Query(default=None),
    ts_to: datetime | None = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
    services: Services = Depends(get_services),
) -> list[AttendanceEventRead]:
    ensure_self_or_admin(context, employee_id)
    start, end = time_range(ts_from, ts_to)
    view = services.ledger.query_by_employee(context, organization_id, employee_id, ts_from=start, ts_to=end)
    return [event_read(event) for event in view]


@router.get("/stats", response_model=AttendanceStatsRead)
def organization_stats(
    organization_id: str | None = Query(default=None),
    ts_from: datetime | None = Query(default=None),
    ts_to: datetime | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> AttendanceStatsRead:
    start, end = time_range(ts_from, ts_to)
    stats = services.ledger.aggregate_by_organization(context, organization_id, ts_from=start, ts_to=end)
    return AttendanceStatsRead(**stats.to_dict())


@router.get("/geofences/{geofence_id}/activity", response_model=GeofenceActivityRead)
def geofence_activity(
    geofence_id: str,
    organization_id: str | None = Query(default=None),
    employee_id: str | None = Query(default=None),
    ts_from: datetime | None = Query(default=None),
    ts_to: datetime | None = Query(default=None),
    context: TenantContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> GeofenceActivityRead:
    start, end = time_range(ts_from, ts_to)
    geofence = services.registry.get_geofence(context, organization_id, geofence_id)
    view = services.ledger.query_by_geofence(
        context,
        geofence.organization_id,
        geofence.id,
        employee_id=employee_id,
        ts_from=start,
        ts_to=end,
    )
    events = list(view)
    stats = services.ledger.aggregate_by_geofence(
        context,
        geofence.organization_id,
        geofence.id,
        ts_from=start,
        ts_to=end,
    )
    return GeofenceActivityRead(
        geofence_id=geofence.id,
        stats=AttendanceStatsRead(**stats.to_dict()),
        events=[event_read(event) for event in events],
    )
