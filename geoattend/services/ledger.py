from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from geoattend.models import AttendanceEvent, AttendanceEventType, new_id
from geoattend.services.attendance_calc import normalize_ts
from geoattend.services.ports import LedgerPort
from geoattend.services.tenancy import TenantContext, for_organization, scope


@dataclass
class AttendanceStats:
    count: int = 0
    on_time_count: int = 0
    late_count: int = 0
    total_late_minutes: int = 0
    total_hours: float = 0.0
    check_in_count: int = 0
    check_out_count: int = 0
    employee_ids: set[str] = field(default_factory=set, repr=False)

    @property
    def unique_employees(self) -> int:
        return len(self.employee_ids)

    @property
    def average_session_hours(self) -> float:
        if self.check_out_count == 0:
            return 0.0
        return round(self.total_hours / self.check_out_count, 2)

    def add(self, event: AttendanceEvent) -> None:
        self.count += 1
        self.employee_ids.add(event.employee_id)
        if event.type == AttendanceEventType.CHECK_IN:
            self.check_in_count += 1
            if event.is_on_time is True:
                self.on_time_count += 1
            elif event.is_on_time is False:
                self.late_count += 1
            self.total_late_minutes += int(event.late_minutes or 0)
        elif event.type == AttendanceEventType.CHECK_OUT:
            self.check_out_count += 1
            self.total_hours += float(event.total_hours or 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "on_time_count": self.on_time_count,
            "late_count": self.late_count,
            "total_late_minutes": self.total_late_minutes,
            "total_hours": round(self.total_hours, 2),
            "check_in_count": self.check_in_count,
            "check_out_count": self.check_out_count,
            "unique_employees": self.unique_employees,
            "average_session_hours": self.average_session_hours,
        }


def fold_stats(events: Iterable[AttendanceEvent]) -> AttendanceStats:
    stats = AttendanceStats()
    for event in events:
        stats.add(event)
    stats.total_hours = round(stats.total_hours, 2)
    return stats


class EventView:
    """Lazy, restartable view over ledger rows; each iteration re-runs the query."""

    def __init__(
        self,
        port: LedgerPort,
        query: Mapping[str, Any],
        *,
        ts_from: datetime | None,
        ts_to: datetime | None,
    ) -> None:
        self._port = port
        self._query = dict(query)
        self._ts_from = ts_from
        self._ts_to = ts_to

    def __iter__(self) -> Iterator[AttendanceEvent]:
        return iter(self._port.iter_events(self._query, ts_from=self._ts_from, ts_to=self._ts_to))


def _bound(value: datetime | None) -> datetime | None:
    return normalize_ts(value) if value is not None else None


class AttendanceLedger:
    def __init__(self, port: LedgerPort) -> None:
        self.port = port

    def append(self, event: AttendanceEvent) -> AttendanceEvent:
        if not event.id:
            event.id = new_id()
        event.ts_utc = normalize_ts(event.ts_utc)
        if event.created_at is None:
            event.created_at = datetime.now(timezone.utc)
        if event.flags is None:
            event.flags = {}
        if event.late_minutes is None:
            event.late_minutes = 0
        return self.port.append(event)

    def query_by_employee(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        *,
        ts_from: datetime | None = None,
        ts_to: datetime | None = None,
    ) -> EventView:
        ctx = for_organization(context, organization_id)
        return EventView(
            self.port,
            scope({"employee_id": employee_id}, ctx),
            ts_from=_bound(ts_from),
            ts_to=_bound(ts_to),
        )

    def query_by_geofence(
        self,
        context: TenantContext,
        organization_id: str | None,
        geofence_id: str,
        *,
        employee_id: str | None = None,
        ts_from: datetime | None = None,
        ts_to: datetime | None = None,
    ) -> EventView:
        ctx = for_organization(context, organization_id)
        query: dict[str, Any] = {"geofence_id": geofence_id}
        if employee_id is not None:
            query["employee_id"] = employee_id
        return EventView(self.port, scope(query, ctx), ts_from=_bound(ts_from), ts_to=_bound(ts_to))

    def aggregate_by_organization(
        self,
        context: TenantContext,
        organization_id: str | None,
        *,
        ts_from: datetime | None = None,
        ts_to: datetime | None = None,
    ) -> AttendanceStats:
        ctx = for_organization(context, organization_id)
        view = EventView(self.port, scope({}, ctx), ts_from=_bound(ts_from), ts_to=_bound(ts_to))
        return fold_stats(view)

    def aggregate_by_geofence(
        self,
        context: TenantContext,
        organization_id: str | None,
        geofence_id: str,
        *,
        ts_from: datetime | None = None,
        ts_to: datetime | None = None,
    ) -> AttendanceStats:
        return fold_stats(
            self.query_by_geofence(context, organization_id, geofence_id, ts_from=ts_from, ts_to=ts_to)
        )
