from __future__ import annotations

from datetime import datetime

from fastapi import Request

from geoattend.audit import AuditOrigin
from geoattend.errors import ApiError
from geoattend.models import AttendanceEvent, EmployeeAttendanceState, Geofence
from geoattend.schemas import (
    AttendanceEventRead,
    AttendancePointRead,
    AttendanceStateRead,
    GeofenceAssignmentRead,
    GeofenceRead,
    GeofenceScheduleIn,
    GeofenceSettingsIn,
    LocationIn,
    LocationRead,
)
from geoattend.services.attendance_calc import normalize_ts
from geoattend.services.location import Coordinate


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def audit_origin(request: Request) -> AuditOrigin:
    return AuditOrigin(
        ip=client_ip(request),
        user_agent=user_agent(request),
        request_id=getattr(request.state, "request_id", None),
    )


def to_coordinate(location: LocationIn) -> Coordinate:
    return Coordinate(location.latitude, location.longitude)


def _optional_ts(value: datetime | None) -> datetime | None:
    return normalize_ts(value) if value is not None else None


def time_range(ts_from: datetime | None, ts_to: datetime | None) -> tuple[datetime | None, datetime | None]:
    start = _optional_ts(ts_from)
    end = _optional_ts(ts_to)
    if start is not None and end is not None and start > end:
        raise ApiError(status_code=422, code="INVALID_RANGE", message="ts_from must not be after ts_to.")
    return start, end


def _location(lat: float | None, lon: float | None) -> LocationRead | None:
    if lat is None or lon is None:
        return None
    return LocationRead(latitude=lat, longitude=lon)


def geofence_read(geofence: Geofence) -> GeofenceRead:
    return GeofenceRead(
        id=geofence.id,
        organization_id=geofence.organization_id,
        code=geofence.code,
        name=geofence.name,
        type=geofence.type,
        center=LocationRead(latitude=geofence.center_lat, longitude=geofence.center_lon),
        radius_m=geofence.radius_m,
        schedule=GeofenceScheduleIn(
            enabled=geofence.schedule_enabled,
            work_days=list(geofence.work_days or []),
            start_time=geofence.work_start,
            end_time=geofence.work_end,
        ),
        settings=GeofenceSettingsIn(
            entry_notification=geofence.entry_notification,
            exit_notification=geofence.exit_notification,
            auto_check_in=geofence.auto_check_in,
            grace_period_minutes=geofence.grace_period_minutes,
        ),
        status=geofence.status,
        assignments=[
            GeofenceAssignmentRead(
                employee_id=item.employee_id,
                assigned_at=normalize_ts(item.assigned_at),
                assigned_by=item.assigned_by,
            )
            for item in geofence.assignments
        ],
        created_by=geofence.created_by,
        created_at=normalize_ts(geofence.created_at),
        updated_at=normalize_ts(geofence.updated_at),
    )


def event_read(event: AttendanceEvent) -> AttendanceEventRead:
    return AttendanceEventRead(
        id=event.id,
        organization_id=event.organization_id,
        employee_id=event.employee_id,
        geofence_id=event.geofence_id,
        type=event.type,
        ts_utc=normalize_ts(event.ts_utc),
        location=_location(event.lat, event.lon),
        is_on_time=event.is_on_time,
        late_minutes=event.late_minutes or 0,
        total_hours=event.total_hours,
        overtime_hours=event.overtime_hours,
        early_departure=event.early_departure,
        break_minutes=event.break_minutes,
        source=event.source,
        actor_id=event.actor_id,
        flags=event.flags or {},
    )


def state_read(state: EmployeeAttendanceState) -> AttendanceStateRead:
    last_check_in = None
    if state.last_check_in_at is not None:
        last_check_in = AttendancePointRead(
            ts_utc=normalize_ts(state.last_check_in_at),
            geofence_id=state.last_check_in_geofence_id,
            location=_location(state.last_check_in_lat, state.last_check_in_lon),
        )
    last_check_out = None
    if state.last_check_out_at is not None:
        last_check_out = AttendancePointRead(
            ts_utc=normalize_ts(state.last_check_out_at),
            geofence_id=state.last_check_out_geofence_id,
            location=_location(state.last_check_out_lat, state.last_check_out_lon),
        )
    return AttendanceStateRead(
        employee_id=state.employee_id,
        organization_id=state.organization_id,
        current_status=state.current_status,
        auto_check_in_enabled=state.auto_check_in_enabled,
        last_check_in=last_check_in,
        last_check_out=last_check_out,
        break_started_at=_optional_ts(state.break_started_at),
        last_transition_at=_optional_ts(state.last_transition_at),
        version=state.version,
    )
