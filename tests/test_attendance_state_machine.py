from __future__ import annotations

import unittest

from fakes import CENTER_LAT, CENTER_LON, METRE_LAT, Harness, at, org_context

from geoattend.errors import (
    ConcurrentModificationError,
    EmployeeIdConflictError,
    EmployeeInactiveError,
    InvalidTransitionError,
    NotFoundError,
    TenancyViolationError,
)
from geoattend.models import AttendanceEventSource, AttendanceEventType, AttendanceStatus
from geoattend.services.location import Coordinate

INSIDE = Coordinate(CENTER_LAT, CENTER_LON)
OUTSIDE_500M = Coordinate(CENTER_LAT + 500 * METRE_LAT, CENTER_LON)


class AutomaticTransitionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.ctx = org_context()
        self.h.employee("emp-1")
        self.geofence = self.h.geofence(employee_ids=["emp-1"])

    def ping(self, point: Coordinate, hour: int, minute: int):  # type: ignore[no-untyped-def]
        return self.h.engine.handle_location_update(self.ctx, None, "emp-1", point, at(hour, minute))

    def test_workday_scenario(self) -> None:
        entered = self.ping(INSIDE, 9, 7)
        self.assertEqual(len(entered.events), 1)
        check_in = entered.events[0]
        self.assertEqual(check_in.type, AttendanceEventType.CHECK_IN)
        self.assertEqual(check_in.source, AttendanceEventSource.AUTO)
        self.assertFalse(check_in.is_on_time)
        self.assertEqual(check_in.late_minutes, 2)
        self.assertEqual(entered.state.current_status, AttendanceStatus.CHECKED_IN)

        again = self.ping(INSIDE, 9, 8)
        self.assertEqual(again.events, [])
        self.assertEqual(again.state.version, entered.state.version)

        left = self.ping(OUTSIDE_500M, 17, 2)
        self.assertEqual(len(left.events), 1)
        check_out = left.events[0]
        self.assertEqual(check_out.type, AttendanceEventType.CHECK_OUT)
        self.assertEqual(check_out.total_hours, 7.92)
        self.assertEqual(left.state.current_status, AttendanceStatus.CHECKED_OUT)
        self.assertEqual(len(self.h.ledger_store.events), 2)

    def test_notifications_follow_commits(self) -> None:
        self.ping(INSIDE, 9, 7)
        self.ping(OUTSIDE_500M, 17, 2)
        types = self.h.notifier.types()
        self.assertIn("geofence_entry", types)
        self.assertIn("late_check_in", types)
        self.assertIn("geofence_exit", types)

    def test_entry_notification_can_be_disabled(self) -> None:
        self.h.registry.update_geofence(self.ctx, None, self.geofence.id, {"entry_notification": False})
        self.ping(INSIDE, 8, 55)
        self.assertNotIn("geofence_entry", self.h.notifier.types())

    def test_notification_failure_is_logged_not_raised(self) -> None:
        h = Harness(notifier_fails=True)
        h.employee("emp-1")
        h.geofence(employee_ids=["emp-1"])
        with self.assertLogs("geoattend.attendance", level="ERROR"):
            result = h.engine.handle_location_update(self.ctx, None, "emp-1", INSIDE, at(9, 0))
        self.assertEqual(len(result.events), 1)

    def test_unassigned_geofence_is_ignored(self) -> None:
        self.h.employee("emp-2")
        result = self.h.engine.handle_location_update(self.ctx, None, "emp-2", INSIDE, at(9, 0))
        self.assertEqual(result.events, [])
        self.assertEqual(result.memberships, [])

    def test_auto_check_in_disabled_for_employee(self) -> None:
        self.h.employee("emp-3", auto_check_in_enabled=False)
        self.h.registry.assign_employee(self.ctx, None, self.geofence.id, "emp-3")
        result = self.h.engine.handle_location_update(self.ctx, None, "emp-3", INSIDE, at(9, 0))
        self.assertEqual(result.events, [])
        self.assertEqual(len(result.memberships), 1)
        self.assertTrue(result.memberships[0].is_inside)

    def test_out_of_order_ping_is_ignored(self) -> None:
        self.ping(INSIDE, 9, 7)
        with self.assertLogs("geoattend.attendance", level="INFO") as captured:
            stale = self.ping(OUTSIDE_500M, 9, 0)
        self.assertTrue(stale.ignored)
        self.assertEqual(stale.events, [])
        self.assertTrue(any("location_update_ignored" in line for line in captured.output))
        self.assertEqual(stale.state.current_status, AttendanceStatus.CHECKED_IN)

    def test_exit_then_entry_into_other_geofence(self) -> None:
        depot = self.h.geofence(
            "Depot",
            lat=OUTSIDE_500M.latitude,
            lon=OUTSIDE_500M.longitude,
            employee_ids=["emp-1"],
        )
        self.ping(INSIDE, 9, 0)
        moved = self.ping(OUTSIDE_500M, 12, 0)
        self.assertEqual(
            [(event.type, event.geofence_id) for event in moved.events],
            [
                (AttendanceEventType.CHECK_OUT, self.geofence.id),
                (AttendanceEventType.CHECK_IN, depot.id),
            ],
        )
        self.assertEqual(moved.state.last_check_in_geofence_id, depot.id)

    def test_exit_from_geofence_outside_candidate_bound(self) -> None:
        far_away = Coordinate(CENTER_LAT + 50_000 * METRE_LAT, CENTER_LON)
        self.ping(INSIDE, 9, 0)
        result = self.ping(far_away, 18, 0)
        self.assertEqual([event.type for event in result.events], [AttendanceEventType.CHECK_OUT])
        self.assertEqual(result.memberships, [])

    def test_last_seen_location_is_recorded(self) -> None:
        result = self.ping(OUTSIDE_500M, 8, 0)
        self.assertEqual(result.events, [])
        self.assertAlmostEqual(result.state.last_seen_lat, OUTSIDE_500M.latitude)
        self.assertEqual(result.state.last_seen_at, at(8, 0))


class ManualTransitionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.ctx = org_context()
        self.h.employee("emp-1", auto_check_in_enabled=False)
        self.geofence = self.h.geofence()

    def test_check_out_without_check_in_fails(self) -> None:
        with self.assertRaises(InvalidTransitionError) as caught:
            self.h.engine.manual_check_out(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(17, 0))
        self.assertEqual(caught.exception.code, "CHECKIN_REQUIRED")
        self.assertEqual(self.h.ledger_store.events, [])

    def test_manual_round_trip(self) -> None:
        check_in = self.h.engine.manual_check_in(
            self.ctx, None, "emp-1", self.geofence.id, INSIDE, actor_id="admin-1", ts_utc=at(9, 0)
        )
        self.assertEqual(check_in.source, AttendanceEventSource.MANUAL)
        self.assertEqual(check_in.actor_id, "admin-1")
        self.assertTrue(check_in.is_on_time)
        check_out = self.h.engine.manual_check_out(
            self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(18, 0)
        )
        self.assertEqual(check_out.total_hours, 9.0)
        self.assertEqual(check_out.overtime_hours, 1.0)
        self.assertFalse(check_out.early_departure)

    def test_double_check_in_is_rejected(self) -> None:
        self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0))
        with self.assertRaises(InvalidTransitionError) as caught:
            self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 5))
        self.assertEqual(caught.exception.code, "ALREADY_CHECKED_IN")

    def test_check_out_from_other_geofence_is_rejected(self) -> None:
        other = self.h.geofence("Depot")
        self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0))
        with self.assertRaises(InvalidTransitionError):
            self.h.engine.manual_check_out(self.ctx, None, "emp-1", other.id, INSIDE, ts_utc=at(17, 0))

    def test_manual_check_in_outside_is_rejected(self) -> None:
        far_away = Coordinate(CENTER_LAT + 50_000 * METRE_LAT, CENTER_LON)
        for point in (OUTSIDE_500M, far_away):
            with self.assertRaises(InvalidTransitionError) as caught:
                self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, point, ts_utc=at(9, 0))
            self.assertEqual(caught.exception.code, "OUTSIDE_GEOFENCE")
        self.assertEqual(self.h.ledger_store.events, [])
        state = self.h.engine.get_state(self.ctx, None, "emp-1")
        self.assertEqual(state.current_status, AttendanceStatus.CHECKED_OUT)

    def test_inactive_geofence_rejects_check_in(self) -> None:
        self.h.registry.deactivate(self.ctx, None, self.geofence.id)
        with self.assertRaises(InvalidTransitionError) as caught:
            self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0))
        self.assertEqual(caught.exception.code, "GEOFENCE_NOT_ACTIVE")

    def test_clock_skew_is_flagged(self) -> None:
        self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(10, 0))
        with self.assertLogs("geoattend.attendance", level="WARNING"):
            event = self.h.engine.manual_check_out(
                self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0)
            )
        self.assertEqual(event.total_hours, 0.0)
        self.assertTrue(event.flags["CLOCK_SKEW"])

    def test_inactive_employee_is_rejected(self) -> None:
        self.h.employee_store.rows["emp-1"].is_active = False
        with self.assertRaises(EmployeeInactiveError):
            self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0))
        with self.assertRaises(EmployeeInactiveError):
            self.h.engine.handle_location_update(self.ctx, None, "emp-1", INSIDE, at(9, 0))

    def test_unknown_employee_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.h.engine.get_state(self.ctx, None, "ghost")

    def test_employee_of_other_organization_is_invisible(self) -> None:
        self.h.employee("emp-b", organization_id="org-b")
        with self.assertRaises(NotFoundError):
            self.h.engine.manual_check_in(self.ctx, None, "emp-b", self.geofence.id, INSIDE, ts_utc=at(9, 0))
        with self.assertLogs("geoattend.security", level="WARNING"):
            with self.assertRaises(TenancyViolationError):
                self.h.engine.get_state(self.ctx, "org-b", "emp-b")


class BreakTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.ctx = org_context()
        self.h.employee("emp-1", auto_check_in_enabled=False)
        self.geofence = self.h.geofence()
        self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0))

    def test_break_cycle(self) -> None:
        start = self.h.engine.start_break(self.ctx, None, "emp-1", ts_utc=at(12, 0))
        self.assertEqual(start.type, AttendanceEventType.BREAK_START)
        self.assertEqual(start.geofence_id, self.geofence.id)
        state = self.h.engine.get_state(self.ctx, None, "emp-1")
        self.assertEqual(state.current_status, AttendanceStatus.ON_BREAK)

        end = self.h.engine.end_break(self.ctx, None, "emp-1", ts_utc=at(12, 45))
        self.assertEqual(end.break_minutes, 45)
        state = self.h.engine.get_state(self.ctx, None, "emp-1")
        self.assertEqual(state.current_status, AttendanceStatus.CHECKED_IN)
        self.assertIsNone(state.break_started_at)
        self.assertIn("break-end", self.h.notifier.types())

    def test_check_out_on_break_is_rejected(self) -> None:
        self.h.engine.start_break(self.ctx, None, "emp-1", ts_utc=at(12, 0))
        with self.assertRaises(InvalidTransitionError):
            self.h.engine.manual_check_out(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(13, 0))

    def test_break_requires_matching_status(self) -> None:
        with self.assertRaises(InvalidTransitionError) as caught:
            self.h.engine.end_break(self.ctx, None, "emp-1", ts_utc=at(12, 0))
        self.assertEqual(caught.exception.code, "NOT_ON_BREAK")
        self.h.engine.start_break(self.ctx, None, "emp-1", ts_utc=at(12, 0))
        with self.assertRaises(InvalidTransitionError) as caught:
            self.h.engine.start_break(self.ctx, None, "emp-1", ts_utc=at(12, 5))
        self.assertEqual(caught.exception.code, "NOT_CHECKED_IN")


class ConcurrencyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.ctx = org_context()
        self.h.employee("emp-1")
        self.geofence = self.h.geofence(employee_ids=["emp-1"])

    def test_conflict_is_retried_once(self) -> None:
        self.h.state_store.pending_conflicts = 1
        with self.assertLogs("geoattend.attendance", level="WARNING"):
            result = self.h.engine.handle_location_update(self.ctx, None, "emp-1", INSIDE, at(9, 0))
        self.assertEqual(len(result.events), 1)
        self.assertEqual(self.h.uow.rollbacks, 1)
        self.assertEqual(len(self.h.ledger_store.events), 1)

    def test_persistent_conflict_raises(self) -> None:
        self.h.state_store.pending_conflicts = 2
        with self.assertLogs("geoattend.attendance", level="WARNING"):
            with self.assertRaises(ConcurrentModificationError) as caught:
                self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0))
        self.assertTrue(caught.exception.retryable)
        self.assertEqual(self.h.ledger_store.events, [])

    def test_retry_replans_against_fresh_state(self) -> None:
        # A concurrent writer checks the employee in first; the retry becomes a no-op.
        self.h.engine.manual_check_in(self.ctx, None, "emp-1", self.geofence.id, INSIDE, ts_utc=at(9, 0))
        result = self.h.engine.handle_location_update(self.ctx, None, "emp-1", INSIDE, at(9, 1))
        self.assertEqual(result.events, [])
        self.assertEqual(len(self.h.ledger_store.events), 1)

    def test_ledger_failure_rolls_back(self) -> None:
        self.h.ledger_store.fail_next_append = True
        with self.assertRaises(RuntimeError):
            self.h.engine.handle_location_update(self.ctx, None, "emp-1", INSIDE, at(9, 0))
        self.assertEqual(self.h.uow.rollbacks, 1)


class AutoCheckInSettingTests(unittest.TestCase):
    def test_toggle_bumps_version(self) -> None:
        h = Harness()
        ctx = org_context()
        state = h.employee("emp-1", auto_check_in_enabled=False)
        version = state.version
        updated = h.engine.set_auto_check_in(ctx, None, "emp-1", True)
        self.assertTrue(updated.auto_check_in_enabled)
        self.assertEqual(updated.version, version + 1)
        same = h.engine.set_auto_check_in(ctx, None, "emp-1", True)
        self.assertEqual(same.version, version + 1)


class EmployeeRegistrationTests(unittest.TestCase):
    def test_registration_is_idempotent_within_organization(self) -> None:
        h = Harness()
        first = h.employee("emp-1")
        again = h.employee("emp-1")
        self.assertEqual(first.version, again.version)
        self.assertEqual(len(h.employee_store.rows), 1)

    def test_id_owned_by_other_organization_is_rejected(self) -> None:
        h = Harness()
        h.employee("emp-1", organization_id="org-a")
        with self.assertRaises(EmployeeIdConflictError) as caught:
            h.employee("emp-1", organization_id="org-b")
        self.assertEqual(caught.exception.status_code, 409)
        self.assertEqual(h.employee_store.rows["emp-1"].organization_id, "org-a")


if __name__ == "__main__":
    unittest.main()
