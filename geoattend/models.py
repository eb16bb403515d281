from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from geoattend.db import Base, JSONType


def new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeofenceStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class GeofenceType(str, enum.Enum):
    OFFICE = "office"
    SITE = "site"
    WAREHOUSE = "warehouse"
    CUSTOM = "custom"


class AttendanceStatus(str, enum.Enum):
    CHECKED_OUT = "checked-out"
    CHECKED_IN = "checked-in"
    ON_BREAK = "on-break"


class AttendanceEventType(str, enum.Enum):
    CHECK_IN = "check-in"
    CHECK_OUT = "check-out"
    BREAK_START = "break-start"
    BREAK_END = "break-end"


class AttendanceEventSource(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    SYSTEM = "SYSTEM"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    attendance_state: Mapped[EmployeeAttendanceState | None] = relationship(
        back_populates="employee",
        uselist=False,
    )


class Geofence(Base):
    __tablename__ = "geofences"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_geofences_organization_code"),
        Index("ix_geofences_organization_status", "organization_id", "status"),
        Index("ix_geofences_center", "center_lat", "center_lon"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[GeofenceType] = mapped_column(
        Enum(GeofenceType, name="geofence_type"),
        nullable=False,
        default=GeofenceType.CUSTOM,
    )
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[float] = mapped_column(Float, nullable=False)

    schedule_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    work_days: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    work_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    work_end: Mapped[str | None] = mapped_column(String(5), nullable=True)

    entry_notification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exit_notification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_check_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    grace_period_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    status: Mapped[GeofenceStatus] = mapped_column(
        Enum(GeofenceStatus, name="geofence_status"),
        nullable=False,
        default=GeofenceStatus.ACTIVE,
    )
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    assignments: Mapped[list[GeofenceAssignment]] = relationship(
        back_populates="geofence",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="GeofenceAssignment.employee_id",
    )

    @property
    def assigned_employee_ids(self) -> set[str]:
        return {assignment.employee_id for assignment in self.assignments}


class GeofenceAssignment(Base):
    __tablename__ = "geofence_assignments"
    __table_args__ = (
        UniqueConstraint("geofence_id", "employee_id", name="uq_geofence_assignments_geofence_employee"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    geofence_id: Mapped[str] = mapped_column(
        ForeignKey("geofences.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[str] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    geofence: Mapped[Geofence] = relationship(back_populates="assignments")


class EmployeeAttendanceState(Base):
    __tablename__ = "employee_attendance_states"

    employee_id: Mapped[str] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        primary_key=True,
    )
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    current_status: Mapped[AttendanceStatus] = mapped_column(
        Enum(AttendanceStatus, name="attendance_status"),
        nullable=False,
        default=AttendanceStatus.CHECKED_OUT,
    )
    auto_check_in_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    last_check_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_check_in_geofence_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_check_in_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_check_in_lon: Mapped[float | None] = mapped_column(Float, nullable=True)

    last_check_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_check_out_geofence_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_check_out_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_check_out_lon: Mapped[float | None] = mapped_column(Float, nullable=True)

    break_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_transition_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_seen_lon: Mapped[float | None] = mapped_column(Float, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    employee: Mapped[Employee] = relationship(back_populates="attendance_state")


class AttendanceEvent(Base):
    __tablename__ = "attendance_events"
    __table_args__ = (
        Index("ix_attendance_events_employee_ts", "employee_id", "ts_utc"),
        Index("ix_attendance_events_organization_ts", "organization_id", "ts_utc"),
        Index("ix_attendance_events_geofence_ts", "geofence_id", "ts_utc"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    employee_id: Mapped[str] = mapped_column(
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
    )
    geofence_id: Mapped[str] = mapped_column(
        ForeignKey("geofences.id", ondelete="RESTRICT"),
        nullable=False,
    )
    type: Mapped[AttendanceEventType] = mapped_column(
        Enum(AttendanceEventType, name="attendance_event_type"),
        nullable=False,
    )
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)

    is_on_time: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    late_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    overtime_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    early_departure: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    break_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    source: Mapped[AttendanceEventSource] = mapped_column(
        Enum(AttendanceEventSource, name="attendance_event_source"),
        nullable=False,
        default=AttendanceEventSource.AUTO,
    )
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    flags: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    employee_id: Mapped[str | None] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
