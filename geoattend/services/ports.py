"""Persistence and notification contracts used by the attendance core.

Every ``query`` argument is a filter mapping that has already passed through
``tenancy.scope``; stores apply it as equality filters (sequence values mean
membership).
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from datetime import datetime
from typing import Any, Protocol

from geoattend.models import AttendanceEvent, Employee, EmployeeAttendanceState, Geofence
from geoattend.services.location import BoundingBox


class UnitOfWork(Protocol):
    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class GeofencePort(Protocol):
    def get(self, query: Mapping[str, Any]) -> Geofence | None: ...

    def list(self, query: Mapping[str, Any]) -> list[Geofence]: ...

    def list_within(self, query: Mapping[str, Any], box: BoundingBox) -> list[Geofence]: ...

    def list_for_employee(self, query: Mapping[str, Any], employee_id: str) -> list[Geofence]: ...

    def add(self, geofence: Geofence) -> Geofence: ...

    def save(self, geofence: Geofence) -> Geofence: ...


class EmployeePort(Protocol):
    def get(self, query: Mapping[str, Any]) -> Employee | None: ...

    def add(self, employee: Employee) -> Employee: ...


class AttendanceStatePort(Protocol):
    def get(self, query: Mapping[str, Any]) -> EmployeeAttendanceState | None: ...

    def add(self, state: EmployeeAttendanceState) -> EmployeeAttendanceState: ...

    def compare_and_set(
        self,
        query: Mapping[str, Any],
        *,
        expected_version: int,
        values: Mapping[str, Any],
    ) -> bool: ...

    def touch_location(
        self,
        query: Mapping[str, Any],
        *,
        ts_utc: datetime,
        lat: float,
        lon: float,
    ) -> None: ...


class LedgerPort(Protocol):
    def append(self, event: AttendanceEvent) -> AttendanceEvent: ...

    def iter_events(
        self,
        query: Mapping[str, Any],
        *,
        ts_from: datetime | None = None,
        ts_to: datetime | None = None,
    ) -> Iterator[AttendanceEvent]: ...


class NotificationPort(Protocol):
    def notify(self, employee_id: str, event_type: str, payload: Mapping[str, Any]) -> None: ...
