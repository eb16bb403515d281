"""Per-employee attendance state machine.

Location pings and manual actions move an employee between ``checked-out``,
``checked-in`` and ``on-break``. Each transition is one conditional update of
the state row (guarded by its ``version``) plus one ledger append, committed
together. A lost race is rolled back, re-planned against the fresh state and
retried; notifications go out only after the commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from geoattend.errors import (
    ConcurrentModificationError,
    EmployeeIdConflictError,
    EmployeeInactiveError,
    InvalidTransitionError,
    NotFoundError,
)
from geoattend.models import (
    AttendanceEvent,
    AttendanceEventSource,
    AttendanceEventType,
    AttendanceStatus,
    Employee,
    EmployeeAttendanceState,
    Geofence,
    GeofenceStatus,
    new_id,
)
from geoattend.services.attendance_calc import (
    attendance_timezone,
    compute_check_in_metrics,
    compute_check_out_metrics,
    minutes_between,
    normalize_ts,
    schedule_from_geofence,
)
from geoattend.services.geofences import GeofenceRegistry
from geoattend.services.ledger import AttendanceLedger
from geoattend.services.location import Coordinate
from geoattend.services.membership import MembershipEvaluator, MembershipResult, evaluate_geofence
from geoattend.services.ports import (
    AttendanceStatePort,
    EmployeePort,
    NotificationPort,
    UnitOfWork,
)
from geoattend.services.tenancy import TenantContext, ensure_owned, for_organization, scope

logger = logging.getLogger("geoattend.attendance")


@dataclass
class _Plan:
    event: AttendanceEvent
    values: dict[str, Any]
    geofence: Geofence | None


# A planner either always yields a plan or may decline with None.
_PlanT = TypeVar("_PlanT", bound=_Plan | None)


@dataclass
class LocationUpdateResult:
    state: EmployeeAttendanceState
    events: list[AttendanceEvent] = field(default_factory=list)
    memberships: list[MembershipResult] = field(default_factory=list)
    ignored: bool = False


def _round_distance(value: float) -> float:
    return round(value, 2)


class AttendanceStateMachine:
    def __init__(
        self,
        *,
        registry: GeofenceRegistry,
        evaluator: MembershipEvaluator,
        states: AttendanceStatePort,
        employees: EmployeePort,
        ledger: AttendanceLedger,
        uow: UnitOfWork,
        notifier: NotificationPort | None = None,
        tz: ZoneInfo | None = None,
        retry_attempts: int = 1,
    ) -> None:
        self.registry = registry
        self.evaluator = evaluator
        self.states = states
        self.employees = employees
        self.ledger = ledger
        self.uow = uow
        self.notifier = notifier
        self.tz = tz or attendance_timezone()
        self.retry_attempts = max(0, retry_attempts)

    # -- lookups ---------------------------------------------------------

    def _resolve_employee(self, ctx: TenantContext, employee_id: str) -> Employee:
        employee = self.employees.get(scope({"id": employee_id}, ctx))
        if employee is None:
            raise NotFoundError(f"Employee {employee_id} not found.", code="EMPLOYEE_NOT_FOUND")
        ensure_owned(employee, ctx)
        if not employee.is_active:
            raise EmployeeInactiveError()
        return employee

    def _load_state(self, ctx: TenantContext, employee: Employee) -> EmployeeAttendanceState:
        state = self.states.get(scope({"employee_id": employee.id}, ctx))
        if state is not None:
            return state
        state = self._new_state(employee, auto_check_in_enabled=False)
        self.states.add(state)
        self.uow.commit()
        return state

    @staticmethod
    def _new_state(employee: Employee, *, auto_check_in_enabled: bool) -> EmployeeAttendanceState:
        return EmployeeAttendanceState(
            employee_id=employee.id,
            organization_id=employee.organization_id,
            current_status=AttendanceStatus.CHECKED_OUT,
            auto_check_in_enabled=auto_check_in_enabled,
            version=0,
            updated_at=datetime.now(timezone.utc),
        )

    def register_employee(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        full_name: str,
        *,
        auto_check_in_enabled: bool = False,
    ) -> EmployeeAttendanceState:
        ctx = for_organization(context, organization_id)
        existing = self.employees.get(scope({"id": employee_id}, ctx))
        if existing is not None:
            return self._load_state(ctx, existing)
        if self.employees.get({"id": employee_id}) is not None:
            # Ids are global; another organization already owns this one.
            logger.warning(
                "employee_id_conflict",
                extra={"organization_id": ctx.organization_id, "employee_id": employee_id},
            )
            raise EmployeeIdConflictError()

        employee = Employee(
            id=employee_id,
            organization_id=ctx.organization_id,
            full_name=full_name.strip(),
            is_active=True,
            created_at=datetime.now(timezone.utc),
        )
        self.employees.add(employee)
        state = self._new_state(employee, auto_check_in_enabled=auto_check_in_enabled)
        self.states.add(state)
        self.uow.commit()
        logger.info(
            "employee_registered",
            extra={"organization_id": ctx.organization_id, "employee_id": employee_id},
        )
        return state

    def get_state(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
    ) -> EmployeeAttendanceState:
        ctx = for_organization(context, organization_id)
        employee = self.employees.get(scope({"id": employee_id}, ctx))
        if employee is None:
            raise NotFoundError(f"Employee {employee_id} not found.", code="EMPLOYEE_NOT_FOUND")
        return self._load_state(ctx, employee)

    # -- transition core ---------------------------------------------------

    def _run(
        self,
        ctx: TenantContext,
        employee: Employee,
        planner: Callable[[EmployeeAttendanceState], _PlanT],
    ) -> _PlanT:
        query = scope({"employee_id": employee.id}, ctx)
        for attempt in range(self.retry_attempts + 1):
            state = self._load_state(ctx, employee)
            plan = planner(state)
            if plan is None:
                return plan
            try:
                applied = self.states.compare_and_set(query, expected_version=state.version, values=plan.values)
                if applied:
                    self.ledger.append(plan.event)
                    self.uow.commit()
            except Exception:
                self.uow.rollback()
                raise
            if applied:
                logger.info(
                    "attendance_transition",
                    extra={
                        "organization_id": plan.event.organization_id,
                        "employee_id": employee.id,
                        "geofence_id": plan.event.geofence_id,
                        "event_type": plan.event.type.value,
                        "source": plan.event.source.value,
                        "from_status": state.current_status.value,
                        "to_status": plan.values["current_status"].value,
                        "version": state.version + 1,
                    },
                )
                return plan
            self.uow.rollback()
            logger.warning(
                "attendance_transition_conflict",
                extra={"employee_id": employee.id, "attempt": attempt + 1, "expected_version": state.version},
            )
        raise ConcurrentModificationError()

    def _event(
        self,
        state: EmployeeAttendanceState,
        *,
        geofence_id: str,
        event_type: AttendanceEventType,
        ts_utc: datetime,
        point: Coordinate | None,
        source: AttendanceEventSource,
        actor_id: str | None,
        flags: dict[str, Any],
    ) -> AttendanceEvent:
        return AttendanceEvent(
            id=new_id(),
            organization_id=state.organization_id,
            employee_id=state.employee_id,
            geofence_id=geofence_id,
            type=event_type,
            ts_utc=ts_utc,
            lat=point.latitude if point is not None else None,
            lon=point.longitude if point is not None else None,
            is_on_time=None,
            late_minutes=0,
            total_hours=None,
            overtime_hours=None,
            early_departure=None,
            break_minutes=None,
            source=source,
            actor_id=actor_id,
            flags=flags,
            created_at=datetime.now(timezone.utc),
        )

    def _plan_check_in(
        self,
        state: EmployeeAttendanceState,
        geofence: Geofence,
        point: Coordinate,
        ts_utc: datetime,
        *,
        source: AttendanceEventSource,
        actor_id: str | None,
        membership: MembershipResult,
    ) -> _Plan:
        metrics = compute_check_in_metrics(ts_utc=ts_utc, schedule=schedule_from_geofence(geofence), tz=self.tz)
        flags: dict[str, Any] = {
            "distance_m": _round_distance(membership.distance_m),
            "is_inside": membership.is_inside,
            "grace_period_minutes": geofence.grace_period_minutes,
        }
        if metrics.scheduled_start_utc is not None:
            flags["scheduled_start_utc"] = metrics.scheduled_start_utc.isoformat()
            flags["raw_late_minutes"] = metrics.raw_late_minutes

        event = self._event(
            state,
            geofence_id=geofence.id,
            event_type=AttendanceEventType.CHECK_IN,
            ts_utc=ts_utc,
            point=point,
            source=source,
            actor_id=actor_id,
            flags=flags,
        )
        event.is_on_time = metrics.is_on_time
        event.late_minutes = metrics.late_minutes
        values = {
            "current_status": AttendanceStatus.CHECKED_IN,
            "last_check_in_at": ts_utc,
            "last_check_in_geofence_id": geofence.id,
            "last_check_in_lat": point.latitude,
            "last_check_in_lon": point.longitude,
            "break_started_at": None,
            "last_transition_at": ts_utc,
        }
        return _Plan(event=event, values=values, geofence=geofence)

    def _plan_check_out(
        self,
        state: EmployeeAttendanceState,
        geofence: Geofence,
        point: Coordinate,
        ts_utc: datetime,
        *,
        source: AttendanceEventSource,
        actor_id: str | None,
        membership: MembershipResult,
    ) -> _Plan:
        if (
            state.current_status != AttendanceStatus.CHECKED_IN
            or state.last_check_in_at is None
            or state.last_check_in_geofence_id != geofence.id
        ):
            raise InvalidTransitionError("Check-out without matching check-in.", code="CHECKIN_REQUIRED")

        metrics = compute_check_out_metrics(
            check_in_ts_utc=normalize_ts(state.last_check_in_at),
            check_out_ts_utc=ts_utc,
            schedule=schedule_from_geofence(geofence),
            tz=self.tz,
        )
        flags: dict[str, Any] = {
            "distance_m": _round_distance(membership.distance_m),
            "is_inside": membership.is_inside,
        }
        if metrics.clock_skew:
            flags["CLOCK_SKEW"] = True
            logger.warning(
                "attendance_clock_skew",
                extra={
                    "employee_id": state.employee_id,
                    "check_in_ts": normalize_ts(state.last_check_in_at).isoformat(),
                    "check_out_ts": ts_utc.isoformat(),
                },
            )

        event = self._event(
            state,
            geofence_id=geofence.id,
            event_type=AttendanceEventType.CHECK_OUT,
            ts_utc=ts_utc,
            point=point,
            source=source,
            actor_id=actor_id,
            flags=flags,
        )
        event.total_hours = metrics.total_hours
        event.overtime_hours = metrics.overtime_hours
        event.early_departure = metrics.early_departure
        values = {
            "current_status": AttendanceStatus.CHECKED_OUT,
            "last_check_out_at": ts_utc,
            "last_check_out_geofence_id": geofence.id,
            "last_check_out_lat": point.latitude,
            "last_check_out_lon": point.longitude,
            "break_started_at": None,
            "last_transition_at": ts_utc,
        }
        return _Plan(event=event, values=values, geofence=geofence)

    # -- notifications -----------------------------------------------------

    def _notify(self, employee_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(employee_id, event_type, payload)
        except Exception:
            logger.exception(
                "attendance_notification_failed",
                extra={"employee_id": employee_id, "event_type": event_type},
            )

    def _publish(self, plan: _Plan) -> None:
        event = plan.event
        geofence = plan.geofence
        payload: dict[str, Any] = {
            "event_id": event.id,
            "organization_id": event.organization_id,
            "geofence_id": event.geofence_id,
            "geofence_name": geofence.name if geofence is not None else None,
            "ts_utc": normalize_ts(event.ts_utc).isoformat(),
            "source": event.source.value,
        }
        if event.lat is not None and event.lon is not None:
            payload["location"] = {"latitude": event.lat, "longitude": event.lon}

        if event.type == AttendanceEventType.CHECK_IN:
            payload.update({"is_on_time": event.is_on_time, "late_minutes": event.late_minutes})
            if geofence is None or geofence.entry_notification:
                self._notify(event.employee_id, "geofence_entry", payload)
            if event.is_on_time is False:
                self._notify(event.employee_id, "late_check_in", payload)
        elif event.type == AttendanceEventType.CHECK_OUT:
            payload.update(
                {
                    "total_hours": event.total_hours,
                    "overtime_hours": event.overtime_hours,
                    "early_departure": event.early_departure,
                }
            )
            if geofence is None or geofence.exit_notification:
                self._notify(event.employee_id, "geofence_exit", payload)
        else:
            if event.break_minutes is not None:
                payload["break_minutes"] = event.break_minutes
            self._notify(event.employee_id, event.type.value, payload)

    # -- location pings ----------------------------------------------------

    @staticmethod
    def _is_stale(state: EmployeeAttendanceState, ts_utc: datetime) -> bool:
        return state.last_transition_at is not None and ts_utc < normalize_ts(state.last_transition_at)

    def _plan_auto_exit(
        self,
        ctx: TenantContext,
        state: EmployeeAttendanceState,
        point: Coordinate,
        ts_utc: datetime,
        memberships: list[MembershipResult],
    ) -> _Plan | None:
        if self._is_stale(state, ts_utc):
            return None
        if state.current_status != AttendanceStatus.CHECKED_IN or not state.auto_check_in_enabled:
            return None
        geofence_id = state.last_check_in_geofence_id
        if geofence_id is None:
            return None

        membership = next((item for item in memberships if item.geofence_id == geofence_id), None)
        if membership is None:
            # Outside the candidate bound, or no longer active: evaluate it directly.
            geofence = self.registry.geofences.get(scope({"id": geofence_id}, ctx))
            if geofence is None:
                return None
            membership = evaluate_geofence(geofence, point)
        if membership.is_inside or not membership.geofence.auto_check_in:
            return None
        return self._plan_check_out(
            state,
            membership.geofence,
            point,
            ts_utc,
            source=AttendanceEventSource.AUTO,
            actor_id=None,
            membership=membership,
        )

    def _plan_auto_entry(
        self,
        state: EmployeeAttendanceState,
        point: Coordinate,
        ts_utc: datetime,
        memberships: list[MembershipResult],
    ) -> _Plan | None:
        if self._is_stale(state, ts_utc):
            return None
        if state.current_status != AttendanceStatus.CHECKED_OUT or not state.auto_check_in_enabled:
            return None
        for membership in memberships:
            geofence = membership.geofence
            if membership.is_inside and geofence.auto_check_in and geofence.status == GeofenceStatus.ACTIVE:
                return self._plan_check_in(
                    state,
                    geofence,
                    point,
                    ts_utc,
                    source=AttendanceEventSource.AUTO,
                    actor_id=None,
                    membership=membership,
                )
        return None

    def handle_location_update(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        point: Coordinate,
        ts_utc: datetime | None = None,
    ) -> LocationUpdateResult:
        ctx = for_organization(context, organization_id)
        ts_utc = normalize_ts(ts_utc)
        employee = self._resolve_employee(ctx, employee_id)
        state = self._load_state(ctx, employee)
        if self._is_stale(state, ts_utc):
            logger.info(
                "location_update_ignored",
                extra={
                    "employee_id": employee_id,
                    "reason": "out_of_order",
                    "ts_utc": ts_utc.isoformat(),
                    "last_transition_at": normalize_ts(state.last_transition_at).isoformat(),
                },
            )
            return LocationUpdateResult(state=state, ignored=True)

        memberships = self.evaluator.evaluate(ctx, None, employee_id, point)
        plans: list[_Plan] = []
        exit_plan = self._run(
            ctx,
            employee,
            lambda current: self._plan_auto_exit(ctx, current, point, ts_utc, memberships),
        )
        if exit_plan is not None:
            plans.append(exit_plan)
        entry_plan = self._run(
            ctx,
            employee,
            lambda current: self._plan_auto_entry(current, point, ts_utc, memberships),
        )
        if entry_plan is not None:
            plans.append(entry_plan)

        try:
            self.states.touch_location(
                scope({"employee_id": employee_id}, ctx),
                ts_utc=ts_utc,
                lat=point.latitude,
                lon=point.longitude,
            )
            self.uow.commit()
        except Exception:
            self.uow.rollback()
            raise

        for plan in plans:
            self._publish(plan)
        return LocationUpdateResult(
            state=self._load_state(ctx, employee),
            events=[plan.event for plan in plans],
            memberships=memberships,
        )

    # -- manual actions ----------------------------------------------------

    def manual_check_in(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        geofence_id: str,
        point: Coordinate,
        *,
        actor_id: str | None = None,
        ts_utc: datetime | None = None,
    ) -> AttendanceEvent:
        ctx = for_organization(context, organization_id)
        ts_utc = normalize_ts(ts_utc)
        employee = self._resolve_employee(ctx, employee_id)
        geofence = self.registry.get_geofence(ctx, None, geofence_id)
        if geofence.status != GeofenceStatus.ACTIVE:
            raise InvalidTransitionError("Geofence is not active.", code="GEOFENCE_NOT_ACTIVE")
        membership = evaluate_geofence(geofence, point)
        if not membership.is_inside:
            logger.warning(
                "manual_check_in_outside_geofence",
                extra={
                    "organization_id": ctx.organization_id,
                    "employee_id": employee_id,
                    "geofence_id": geofence.id,
                    "distance_m": _round_distance(membership.distance_m),
                },
            )
            raise InvalidTransitionError("Employee is not within the geofence.", code="OUTSIDE_GEOFENCE")

        def planner(state: EmployeeAttendanceState) -> _Plan:
            if state.current_status != AttendanceStatus.CHECKED_OUT:
                raise InvalidTransitionError("Employee is already checked in.", code="ALREADY_CHECKED_IN")
            return self._plan_check_in(
                state,
                geofence,
                point,
                ts_utc,
                source=AttendanceEventSource.MANUAL,
                actor_id=actor_id or ctx.actor_id,
                membership=membership,
            )

        plan = self._run(ctx, employee, planner)
        self._publish(plan)
        return plan.event

    def manual_check_out(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        geofence_id: str,
        point: Coordinate,
        *,
        actor_id: str | None = None,
        ts_utc: datetime | None = None,
    ) -> AttendanceEvent:
        ctx = for_organization(context, organization_id)
        ts_utc = normalize_ts(ts_utc)
        employee = self._resolve_employee(ctx, employee_id)
        geofence = self.registry.get_geofence(ctx, None, geofence_id)
        membership = evaluate_geofence(geofence, point)

        def planner(state: EmployeeAttendanceState) -> _Plan:
            return self._plan_check_out(
                state,
                geofence,
                point,
                ts_utc,
                source=AttendanceEventSource.MANUAL,
                actor_id=actor_id or ctx.actor_id,
                membership=membership,
            )

        plan = self._run(ctx, employee, planner)
        self._publish(plan)
        return plan.event

    def _break_point(self, state: EmployeeAttendanceState, point: Coordinate | None) -> Coordinate | None:
        if point is not None:
            return point
        if state.last_seen_lat is not None and state.last_seen_lon is not None:
            return Coordinate(state.last_seen_lat, state.last_seen_lon)
        if state.last_check_in_lat is not None and state.last_check_in_lon is not None:
            return Coordinate(state.last_check_in_lat, state.last_check_in_lon)
        return None

    def start_break(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        *,
        point: Coordinate | None = None,
        actor_id: str | None = None,
        ts_utc: datetime | None = None,
    ) -> AttendanceEvent:
        ctx = for_organization(context, organization_id)
        ts_utc = normalize_ts(ts_utc)
        employee = self._resolve_employee(ctx, employee_id)

        def planner(state: EmployeeAttendanceState) -> _Plan:
            if state.current_status != AttendanceStatus.CHECKED_IN or state.last_check_in_geofence_id is None:
                raise InvalidTransitionError("Breaks can only start while checked in.", code="NOT_CHECKED_IN")
            event = self._event(
                state,
                geofence_id=state.last_check_in_geofence_id,
                event_type=AttendanceEventType.BREAK_START,
                ts_utc=ts_utc,
                point=self._break_point(state, point),
                source=AttendanceEventSource.MANUAL,
                actor_id=actor_id or ctx.actor_id,
                flags={},
            )
            values = {
                "current_status": AttendanceStatus.ON_BREAK,
                "break_started_at": ts_utc,
                "last_transition_at": ts_utc,
            }
            return _Plan(event=event, values=values, geofence=None)

        plan = self._run(ctx, employee, planner)
        self._publish(plan)
        return plan.event

    def end_break(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        *,
        point: Coordinate | None = None,
        actor_id: str | None = None,
        ts_utc: datetime | None = None,
    ) -> AttendanceEvent:
        ctx = for_organization(context, organization_id)
        ts_utc = normalize_ts(ts_utc)
        employee = self._resolve_employee(ctx, employee_id)

        def planner(state: EmployeeAttendanceState) -> _Plan:
            if state.current_status != AttendanceStatus.ON_BREAK or state.last_check_in_geofence_id is None:
                raise InvalidTransitionError("No break is in progress.", code="NOT_ON_BREAK")
            event = self._event(
                state,
                geofence_id=state.last_check_in_geofence_id,
                event_type=AttendanceEventType.BREAK_END,
                ts_utc=ts_utc,
                point=self._break_point(state, point),
                source=AttendanceEventSource.MANUAL,
                actor_id=actor_id or ctx.actor_id,
                flags={},
            )
            if state.break_started_at is not None:
                event.break_minutes = minutes_between(state.break_started_at, ts_utc)
            values = {
                "current_status": AttendanceStatus.CHECKED_IN,
                "break_started_at": None,
                "last_transition_at": ts_utc,
            }
            return _Plan(event=event, values=values, geofence=None)

        plan = self._run(ctx, employee, planner)
        self._publish(plan)
        return plan.event

    def set_auto_check_in(
        self,
        context: TenantContext,
        organization_id: str | None,
        employee_id: str,
        enabled: bool,
    ) -> EmployeeAttendanceState:
        ctx = for_organization(context, organization_id)
        employee = self._resolve_employee(ctx, employee_id)
        query = scope({"employee_id": employee_id}, ctx)
        for _ in range(self.retry_attempts + 1):
            state = self._load_state(ctx, employee)
            if state.auto_check_in_enabled == enabled:
                return state
            if self.states.compare_and_set(
                query,
                expected_version=state.version,
                values={"auto_check_in_enabled": enabled},
            ):
                self.uow.commit()
                return self._load_state(ctx, employee)
            self.uow.rollback()
        raise ConcurrentModificationError()
