from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends
from sqlalchemy.orm import Session

from geoattend.db import get_db
from geoattend.services.attendance import AttendanceStateMachine
from geoattend.services.attendance_calc import attendance_timezone
from geoattend.services.geofences import GeofenceRegistry
from geoattend.services.ledger import AttendanceLedger
from geoattend.services.membership import MembershipEvaluator
from geoattend.services.notifications import OutboxNotifier
from geoattend.services.stores import (
    SqlAttendanceStateStore,
    SqlEmployeeStore,
    SqlGeofenceStore,
    SqlLedgerStore,
)
from geoattend.settings import get_settings


@dataclass
class Services:
    db: Session
    registry: GeofenceRegistry
    evaluator: MembershipEvaluator
    ledger: AttendanceLedger
    attendance: AttendanceStateMachine


def build_services(db: Session) -> Services:
    """Wire the SQL stores into the core; the session is the unit of work."""
    settings = get_settings()
    notifier = OutboxNotifier(db)
    employees = SqlEmployeeStore(db)
    registry = GeofenceRegistry(
        SqlGeofenceStore(db),
        employees,
        db,
        notifier=notifier,
        code_attempts=settings.code_generation_max_attempts,
    )
    evaluator = MembershipEvaluator(registry, candidate_radius_m=settings.candidate_search_radius_m)
    ledger = AttendanceLedger(SqlLedgerStore(db))
    attendance = AttendanceStateMachine(
        registry=registry,
        evaluator=evaluator,
        states=SqlAttendanceStateStore(db),
        employees=employees,
        ledger=ledger,
        uow=db,
        notifier=notifier,
        tz=attendance_timezone(settings.attendance_timezone),
        retry_attempts=settings.transition_retry_attempts,
    )
    return Services(db=db, registry=registry, evaluator=evaluator, ledger=ledger, attendance=attendance)


def get_services(db: Session = Depends(get_db)) -> Services:
    return build_services(db)
