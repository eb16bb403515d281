from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from geoattend.models import (
    AttendanceEventSource,
    AttendanceEventType,
    AttendanceStatus,
    GeofenceStatus,
    GeofenceType,
)
from geoattend.services.attendance_calc import WEEKDAY_NAMES


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class LocationRead(BaseModel):
    latitude: float
    longitude: float


class GeofenceScheduleIn(BaseModel):
    enabled: bool = False
    work_days: list[str] = Field(default_factory=list)
    start_time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    end_time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")

    @field_validator("work_days")
    @classmethod
    def _known_days(cls, value: list[str]) -> list[str]:
        unknown = [day for day in value if day not in WEEKDAY_NAMES]
        if unknown:
            raise ValueError(f"Unknown work days: {', '.join(unknown)}")
        return list(dict.fromkeys(value))


class GeofenceSettingsIn(BaseModel):
    entry_notification: bool = True
    exit_notification: bool = True
    auto_check_in: bool = False
    grace_period_minutes: int = Field(default=5, ge=0, le=60)


class GeofenceCreate(BaseModel):
    organization_id: str | None = None
    name: str = Field(min_length=1, max_length=255)
    type: GeofenceType = GeofenceType.CUSTOM
    center: LocationIn
    radius_m: float = Field(ge=50, le=10_000)
    schedule: GeofenceScheduleIn = Field(default_factory=GeofenceScheduleIn)
    settings: GeofenceSettingsIn = Field(default_factory=GeofenceSettingsIn)
    employee_ids: list[str] = Field(default_factory=list)


class GeofenceUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    organization_id: str | None = None
    name: str | None = Field(default=None, min_length=1, max_length=255)
    type: GeofenceType | None = None
    center: LocationIn | None = None
    radius_m: float | None = Field(default=None, ge=50, le=10_000)
    schedule: GeofenceScheduleIn | None = None
    settings: GeofenceSettingsIn | None = None

    def to_changes(self) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        provided = self.model_fields_set
        for key in ("organization_id", "name", "type", "radius_m"):
            if key in provided and getattr(self, key) is not None:
                changes[key] = getattr(self, key)
        if self.center is not None:
            changes["center_lat"] = self.center.latitude
            changes["center_lon"] = self.center.longitude
        if self.schedule is not None:
            changes.update(
                {
                    "schedule_enabled": self.schedule.enabled,
                    "work_days": list(self.schedule.work_days),
                    "work_start": self.schedule.start_time,
                    "work_end": self.schedule.end_time,
                }
            )
        if self.settings is not None:
            changes.update(self.settings.model_dump())
        return changes


class GeofenceAssignRequest(BaseModel):
    employee_ids: list[str] = Field(min_length=1)


class GeofenceAssignmentRead(BaseModel):
    employee_id: str
    assigned_at: datetime
    assigned_by: str | None = None


class GeofenceRead(BaseModel):
    id: str
    organization_id: str
    code: str
    name: str
    type: GeofenceType
    center: LocationRead
    radius_m: float
    schedule: GeofenceScheduleIn
    settings: GeofenceSettingsIn
    status: GeofenceStatus
    assignments: list[GeofenceAssignmentRead]
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class MembershipCheckRequest(BaseModel):
    location: LocationIn
    employee_id: str | None = None


class MembershipRead(BaseModel):
    geofence_id: str
    name: str
    is_inside: bool
    distance_m: float
    radius_m: float


class LocationUpdateRequest(BaseModel):
    employee_id: str
    location: LocationIn
    ts_utc: datetime | None = None


class ManualAttendanceRequest(BaseModel):
    employee_id: str
    geofence_id: str
    location: LocationIn
    ts_utc: datetime | None = None


class BreakRequest(BaseModel):
    employee_id: str
    location: LocationIn | None = None
    ts_utc: datetime | None = None


class EmployeeRegisterRequest(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    full_name: str = Field(min_length=1, max_length=255)
    auto_check_in_enabled: bool = False


class AutoCheckInUpdateRequest(BaseModel):
    enabled: bool


class AttendanceEventRead(BaseModel):
    id: str
    organization_id: str
    employee_id: str
    geofence_id: str
    type: AttendanceEventType
    ts_utc: datetime
    location: LocationRead | None = None
    is_on_time: bool | None = None
    late_minutes: int = 0
    total_hours: float | None = None
    overtime_hours: float | None = None
    early_departure: bool | None = None
    break_minutes: int | None = None
    source: AttendanceEventSource
    actor_id: str | None = None
    flags: dict[str, Any] = Field(default_factory=dict)


class AttendancePointRead(BaseModel):
    ts_utc: datetime
    geofence_id: str | None = None
    location: LocationRead | None = None


class AttendanceStateRead(BaseModel):
    employee_id: str
    organization_id: str
    current_status: AttendanceStatus
    auto_check_in_enabled: bool
    last_check_in: AttendancePointRead | None = None
    last_check_out: AttendancePointRead | None = None
    break_started_at: datetime | None = None
    last_transition_at: datetime | None = None
    version: int


class LocationUpdateResponse(BaseModel):
    state: AttendanceStateRead
    events: list[AttendanceEventRead]
    memberships: list[MembershipRead]
    ignored: bool = False


class AttendanceStatsRead(BaseModel):
    count: int
    on_time_count: int
    late_count: int
    total_late_minutes: int
    total_hours: float
    check_in_count: int
    check_out_count: int
    unique_employees: int
    average_session_hours: float


class GeofenceActivityRead(BaseModel):
    geofence_id: str
    stats: AttendanceStatsRead
    events: list[AttendanceEventRead]
