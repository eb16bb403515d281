from __future__ import annotations

import random
import unittest

from fakes import CENTER_LAT, CENTER_LON, METRE_LAT, Harness, org_context

from geoattend.errors import (
    CodeGenerationError,
    InvalidCoordinateError,
    InvalidGeofenceError,
    InvalidTransitionError,
    NotFoundError,
    TenancyViolationError,
)
from geoattend.models import GeofenceStatus
from geoattend.services.geofences import GeofenceDraft, GeofenceRegistry
from geoattend.services.location import Coordinate
from geoattend.services.tenancy import TenantContext


class CreateGeofenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.h.employee("emp-1")

    def test_create_assigns_code_and_employees(self) -> None:
        geofence = self.h.geofence("Head Office", employee_ids=["emp-1"])
        self.assertRegex(geofence.code, r"^HE\d{4}$")
        self.assertEqual(geofence.organization_id, "org-a")
        self.assertEqual(geofence.assigned_employee_ids, {"emp-1"})
        self.assertIn("assigned_to_geofence", self.h.notifier.types())

    def test_radius_bounds(self) -> None:
        with self.assertRaises(InvalidGeofenceError):
            self.h.geofence(radius_m=49.9)
        with self.assertRaises(InvalidGeofenceError):
            self.h.geofence(radius_m=10_000.1)
        self.assertEqual(self.h.geofence(radius_m=50).radius_m, 50.0)

    def test_schedule_requires_start_time(self) -> None:
        with self.assertRaises(InvalidGeofenceError):
            self.h.geofence(schedule_enabled=True, work_start=None)

    def test_grace_period_bounds(self) -> None:
        with self.assertRaises(InvalidGeofenceError):
            self.h.geofence(grace_period_minutes=61)

    def test_unknown_employee_is_rejected_before_persisting(self) -> None:
        with self.assertRaises(NotFoundError) as caught:
            self.h.geofence(employee_ids=["ghost"])
        self.assertEqual(caught.exception.code, "EMPLOYEE_NOT_FOUND")
        self.assertEqual(self.h.geofence_store.rows, {})

    def test_invalid_center_is_rejected(self) -> None:
        with self.assertRaises(InvalidCoordinateError):
            Coordinate(91.0, 0.0)

    def test_code_generation_is_bounded(self) -> None:
        class StuckRandom(random.Random):
            def randint(self, a: int, b: int) -> int:
                return 1234

        h = Harness()
        registry = GeofenceRegistry(h.geofence_store, h.employee_store, h.uow, rng=StuckRandom(), code_attempts=5)
        draft = GeofenceDraft(name="Depot", center=Coordinate(CENTER_LAT, CENTER_LON), radius_m=100)
        first = registry.create_geofence(org_context(), None, draft)
        self.assertEqual(first.code, "DE1234")
        with self.assertLogs("geoattend.geofences", level="ERROR"):
            with self.assertRaises(CodeGenerationError):
                registry.create_geofence(org_context(), None, draft)

    def test_same_code_allowed_in_other_organization(self) -> None:
        class StuckRandom(random.Random):
            def randint(self, a: int, b: int) -> int:
                return 1234

        h = Harness()
        registry = GeofenceRegistry(h.geofence_store, h.employee_store, h.uow, rng=StuckRandom())
        draft = GeofenceDraft(name="Depot", center=Coordinate(CENTER_LAT, CENTER_LON), radius_m=100)
        registry.create_geofence(org_context("org-a"), None, draft)
        other = registry.create_geofence(org_context("org-b"), None, draft)
        self.assertEqual(other.code, "DE1234")


class LifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.ctx = org_context()
        self.geofence = self.h.geofence()

    def test_status_moves_forward_only(self) -> None:
        self.h.registry.deactivate(self.ctx, None, self.geofence.id)
        self.assertEqual(self.geofence.status, GeofenceStatus.INACTIVE)
        # Same status is a no-op.
        self.h.registry.deactivate(self.ctx, None, self.geofence.id)
        self.h.registry.archive(self.ctx, None, self.geofence.id)
        self.assertEqual(self.geofence.status, GeofenceStatus.ARCHIVED)
        with self.assertRaises(InvalidTransitionError) as caught:
            self.h.registry.deactivate(self.ctx, None, self.geofence.id)
        self.assertEqual(caught.exception.code, "GEOFENCE_STATUS_BACKWARDS")

    def test_active_can_be_archived_directly(self) -> None:
        self.h.registry.archive(self.ctx, None, self.geofence.id)
        self.assertEqual(self.geofence.status, GeofenceStatus.ARCHIVED)

    def test_update_validates_merged_values(self) -> None:
        updated = self.h.registry.update_geofence(self.ctx, None, self.geofence.id, {"radius_m": 250, "name": "Annex"})
        self.assertEqual(updated.radius_m, 250)
        self.assertEqual(updated.name, "Annex")
        with self.assertRaises(InvalidGeofenceError):
            self.h.registry.update_geofence(self.ctx, None, self.geofence.id, {"radius_m": 20_000})
        with self.assertRaises(InvalidGeofenceError):
            self.h.registry.update_geofence(self.ctx, None, self.geofence.id, {"status": "ARCHIVED"})

    def test_organization_is_immutable(self) -> None:
        with self.assertRaises(InvalidGeofenceError):
            self.h.registry.update_geofence(self.ctx, None, self.geofence.id, {"organization_id": "org-b"})

    def test_archived_geofence_rejects_updates_and_assignments(self) -> None:
        self.h.employee("emp-1")
        self.h.registry.archive(self.ctx, None, self.geofence.id)
        with self.assertRaises(InvalidTransitionError):
            self.h.registry.update_geofence(self.ctx, None, self.geofence.id, {"name": "Old"})
        with self.assertRaises(InvalidTransitionError):
            self.h.registry.assign_employee(self.ctx, None, self.geofence.id, "emp-1")


class AssignmentTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.ctx = org_context()
        self.h.employee("emp-1")
        self.h.employee("emp-2")
        self.geofence = self.h.geofence()

    def test_assign_is_idempotent(self) -> None:
        self.h.registry.assign_employees(self.ctx, None, self.geofence.id, ["emp-1", "emp-1"])
        commits = self.h.uow.commits
        self.h.registry.assign_employee(self.ctx, None, self.geofence.id, "emp-1")
        self.assertEqual(self.h.uow.commits, commits)
        self.assertEqual(len(self.geofence.assignments), 1)
        self.assertEqual(self.h.notifier.types().count("assigned_to_geofence"), 1)

    def test_remove_employee(self) -> None:
        self.h.registry.assign_employees(self.ctx, None, self.geofence.id, ["emp-1", "emp-2"])
        self.h.registry.remove_employee(self.ctx, None, self.geofence.id, "emp-1")
        self.assertEqual(self.geofence.assigned_employee_ids, {"emp-2"})
        self.h.registry.remove_employee(self.ctx, None, self.geofence.id, "emp-1")
        self.assertEqual(self.h.notifier.types().count("removed_from_geofence"), 1)

    def test_cannot_assign_employee_of_other_organization(self) -> None:
        self.h.employee("emp-b", organization_id="org-b")
        with self.assertRaises(NotFoundError):
            self.h.registry.assign_employee(self.ctx, None, self.geofence.id, "emp-b")

    def test_notification_failure_does_not_break_assignment(self) -> None:
        h = Harness(notifier_fails=True)
        h.employee("emp-1")
        with self.assertLogs("geoattend.geofences", level="ERROR"):
            geofence = h.geofence(employee_ids=["emp-1"])
        self.assertEqual(geofence.assigned_employee_ids, {"emp-1"})

    def test_find_by_employee_lists_active_only(self) -> None:
        other = self.h.geofence("Depot")
        self.h.registry.assign_employee(self.ctx, None, self.geofence.id, "emp-1")
        self.h.registry.assign_employee(self.ctx, None, other.id, "emp-1")
        self.h.registry.deactivate(self.ctx, None, other.id)
        found = self.h.registry.find_by_employee(self.ctx, None, "emp-1")
        self.assertEqual([item.id for item in found], [self.geofence.id])


class TenancyIsolationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.geofence_b = self.h.geofence("Branch", organization_id="org-b")

    def test_other_organization_cannot_read(self) -> None:
        with self.assertRaises(NotFoundError):
            self.h.registry.get_geofence(org_context("org-a"), None, self.geofence_b.id)

    def test_naming_other_organization_is_violation(self) -> None:
        with self.assertLogs("geoattend.security", level="WARNING"):
            with self.assertRaises(TenancyViolationError):
                self.h.registry.get_geofence(org_context("org-a"), "org-b", self.geofence_b.id)

    def test_every_store_query_is_scoped(self) -> None:
        self.h.geofence_store.queries.clear()
        self.h.registry.list_geofences(org_context("org-a"), None)
        self.h.registry.find_candidates(org_context("org-a"), None, Coordinate(CENTER_LAT, CENTER_LON), 1000)
        self.assertTrue(self.h.geofence_store.queries)
        for query in self.h.geofence_store.queries:
            self.assertEqual(query["organization_id"], "org-a")

    def test_operator_lists_platform_wide(self) -> None:
        self.h.geofence("HQ", organization_id="org-a")
        operator = TenantContext(organization_id=None, actor_id="ops", role="platform_admin", is_platform_operator=True)
        names = sorted(item.organization_id for item in self.h.registry.list_geofences(operator, None))
        self.assertEqual(names, ["org-a", "org-b"])
        scoped = self.h.registry.list_geofences(operator, "org-a")
        self.assertEqual([item.organization_id for item in scoped], ["org-a"])


class CandidateSearchTests(unittest.TestCase):
    def setUp(self) -> None:
        self.h = Harness()
        self.ctx = org_context()

    def test_candidates_sorted_by_distance_within_bound(self) -> None:
        far = self.h.geofence("Far", lat=CENTER_LAT + 5_000 * METRE_LAT)
        near = self.h.geofence("Near", lat=CENTER_LAT + 100 * METRE_LAT)
        self.h.geofence("Outside", lat=CENTER_LAT + 20_000 * METRE_LAT)
        point = Coordinate(CENTER_LAT, CENTER_LON)
        ranked = self.h.registry.find_candidates_with_distance(self.ctx, None, point, 10_000)
        self.assertEqual([item.id for item, _ in ranked], [near.id, far.id])
        self.assertAlmostEqual(ranked[0][1], 100, delta=1)

    def test_inactive_geofences_are_not_candidates(self) -> None:
        geofence = self.h.geofence()
        self.h.registry.deactivate(self.ctx, None, geofence.id)
        self.assertEqual(self.h.registry.find_candidates(self.ctx, None, Coordinate(CENTER_LAT, CENTER_LON), 1000), [])


if __name__ == "__main__":
    unittest.main()
