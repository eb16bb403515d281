from __future__ import annotations

from collections.abc import Iterator, Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from geoattend.errors import EmployeeIdConflictError
from geoattend.models import (
    AttendanceEvent,
    Employee,
    EmployeeAttendanceState,
    Geofence,
    GeofenceAssignment,
)
from geoattend.services.location import BoundingBox


def _apply_filters(stmt: Select, model: type, query: Mapping[str, Any]) -> Select:
    for key, value in query.items():
        column = getattr(model, key)
        if isinstance(value, (list, tuple, set, frozenset)):
            stmt = stmt.where(column.in_(list(value)))
        else:
            stmt = stmt.where(column == value)
    return stmt


class SqlGeofenceStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, query: Mapping[str, Any]) -> Geofence | None:
        return self.db.scalar(_apply_filters(select(Geofence), Geofence, query))

    def list(self, query: Mapping[str, Any]) -> list[Geofence]:
        stmt = _apply_filters(select(Geofence), Geofence, query).order_by(Geofence.name.asc(), Geofence.id.asc())
        return list(self.db.scalars(stmt).all())

    def list_within(self, query: Mapping[str, Any], box: BoundingBox) -> list[Geofence]:
        stmt = _apply_filters(select(Geofence), Geofence, query).where(
            Geofence.center_lat >= box.min_lat,
            Geofence.center_lat <= box.max_lat,
        )
        if box.min_lon is not None and box.max_lon is not None:
            stmt = stmt.where(
                Geofence.center_lon >= box.min_lon,
                Geofence.center_lon <= box.max_lon,
            )
        return list(self.db.scalars(stmt.order_by(Geofence.id.asc())).all())

    def list_for_employee(self, query: Mapping[str, Any], employee_id: str) -> list[Geofence]:
        stmt = (
            _apply_filters(select(Geofence), Geofence, query)
            .join(GeofenceAssignment, GeofenceAssignment.geofence_id == Geofence.id)
            .where(GeofenceAssignment.employee_id == employee_id)
            .order_by(Geofence.name.asc(), Geofence.id.asc())
        )
        return list(self.db.scalars(stmt).all())

    def add(self, geofence: Geofence) -> Geofence:
        self.db.add(geofence)
        self.db.flush()
        return geofence

    def save(self, geofence: Geofence) -> Geofence:
        self.db.add(geofence)
        self.db.flush()
        return geofence


class SqlEmployeeStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, query: Mapping[str, Any]) -> Employee | None:
        return self.db.scalar(_apply_filters(select(Employee), Employee, query))

    def add(self, employee: Employee) -> Employee:
        self.db.add(employee)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise EmployeeIdConflictError() from None
        return employee


class SqlAttendanceStateStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, query: Mapping[str, Any]) -> EmployeeAttendanceState | None:
        stmt = _apply_filters(select(EmployeeAttendanceState), EmployeeAttendanceState, query)
        # Conditional updates bypass the identity map, so always reload.
        return self.db.scalar(stmt.execution_options(populate_existing=True))

    def add(self, state: EmployeeAttendanceState) -> EmployeeAttendanceState:
        self.db.add(state)
        self.db.flush()
        return state

    def compare_and_set(
        self,
        query: Mapping[str, Any],
        *,
        expected_version: int,
        values: Mapping[str, Any],
    ) -> bool:
        stmt = update(EmployeeAttendanceState)
        for key, value in query.items():
            stmt = stmt.where(getattr(EmployeeAttendanceState, key) == value)
        stmt = (
            stmt.where(EmployeeAttendanceState.version == expected_version)
            .values(
                **dict(values),
                version=expected_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def touch_location(
        self,
        query: Mapping[str, Any],
        *,
        ts_utc: datetime,
        lat: float,
        lon: float,
    ) -> None:
        stmt = update(EmployeeAttendanceState)
        for key, value in query.items():
            stmt = stmt.where(getattr(EmployeeAttendanceState, key) == value)
        self.db.execute(
            stmt.values(last_seen_at=ts_utc, last_seen_lat=lat, last_seen_lon=lon).execution_options(
                synchronize_session=False
            )
        )


class SqlLedgerStore:
    def __init__(self, db: Session, *, batch_size: int = 500) -> None:
        self.db = db
        self.batch_size = batch_size

    def append(self, event: AttendanceEvent) -> AttendanceEvent:
        self.db.add(event)
        self.db.flush()
        return event

    def iter_events(
        self,
        query: Mapping[str, Any],
        *,
        ts_from: datetime | None = None,
        ts_to: datetime | None = None,
    ) -> Iterator[AttendanceEvent]:
        stmt = _apply_filters(select(AttendanceEvent), AttendanceEvent, query)
        if ts_from is not None:
            stmt = stmt.where(AttendanceEvent.ts_utc >= ts_from)
        if ts_to is not None:
            stmt = stmt.where(AttendanceEvent.ts_utc <= ts_to)
        stmt = stmt.order_by(AttendanceEvent.ts_utc.asc(), AttendanceEvent.id.asc())
        yield from self.db.scalars(stmt.execution_options(yield_per=self.batch_size))
