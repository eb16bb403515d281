from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

from db_support import sqlite_session_factory
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import select

from geoattend.db import get_db
from geoattend.main import app
from geoattend.models import AuditLog
from geoattend.settings import get_settings

_SECRET = "unit-test-secret"


def _token(sub: str, *, org: str | None = "org-a", role: str = "admin") -> str:
    settings = get_settings()
    claims = {
        "sub": sub,
        "role": role,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=10),
    }
    if org is not None:
        claims["org"] = org
    return jwt.encode(claims, _SECRET, algorithm="HS256")


def _auth(sub: str = "admin-1", **kwargs) -> dict[str, str]:  # type: ignore[no-untyped-def]
    return {"Authorization": f"Bearer {_token(sub, **kwargs)}"}


class ApiEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        settings = get_settings()
        self._previous_secret = settings.jwt_secret
        settings.jwt_secret = _SECRET
        self.factory = sqlite_session_factory()

        def _override() -> Generator[object, None, None]:
            db = self.factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _override
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        get_settings().jwt_secret = self._previous_secret

    def _register(self, employee_id: str = "emp-1", *, org: str = "org-a") -> None:
        response = self.client.post(
            "/api/attendance/employees",
            json={"id": employee_id, "full_name": "Ayse Demir", "auto_check_in_enabled": True},
            headers=_auth(org=org),
        )
        self.assertEqual(response.status_code, 201, response.text)

    def _create_geofence(self, *, org: str = "org-a", employee_ids: list[str] | None = None) -> dict:
        response = self.client.post(
            "/api/geofences",
            json={
                "name": "Head Office",
                "type": "office",
                "center": {"latitude": 41.0, "longitude": 29.0},
                "radius_m": 100,
                "schedule": {
                    "enabled": True,
                    "work_days": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"],
                    "start_time": "09:00",
                    "end_time": "17:00",
                },
                "settings": {"auto_check_in": True, "grace_period_minutes": 5},
                "employee_ids": employee_ids or [],
            },
            headers=_auth(org=org),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_missing_token_returns_error_envelope(self) -> None:
        response = self.client.get("/api/geofences", headers={"X-Request-Id": "req-42"})
        self.assertEqual(response.status_code, 401)
        error = response.json()["error"]
        self.assertEqual(error["code"], "INVALID_TOKEN")
        self.assertEqual(error["request_id"], "req-42")
        self.assertEqual(response.headers["X-Request-Id"], "req-42")

    def test_token_signed_with_other_secret_is_rejected(self) -> None:
        settings = get_settings()
        forged = jwt.encode(
            {
                "sub": "admin-1",
                "org": "org-a",
                "role": "admin",
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "exp": datetime.now(timezone.utc) + timedelta(minutes=10),
            },
            "another-secret",
            algorithm="HS256",
        )
        response = self.client.get("/api/geofences", headers={"Authorization": f"Bearer {forged}"})
        self.assertEqual(response.status_code, 401)

    def test_employee_role_cannot_create_geofence(self) -> None:
        response = self.client.post(
            "/api/geofences",
            json={"name": "HQ", "center": {"latitude": 41.0, "longitude": 29.0}, "radius_m": 100},
            headers=_auth("emp-1", role="employee"),
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_radius_out_of_range_is_validation_error(self) -> None:
        response = self.client.post(
            "/api/geofences",
            json={"name": "HQ", "center": {"latitude": 41.0, "longitude": 29.0}, "radius_m": 10},
            headers=_auth(),
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_geofence_crud_is_tenant_scoped(self) -> None:
        self._register()
        created = self._create_geofence(employee_ids=["emp-1"])
        self.assertEqual(created["organization_id"], "org-a")
        self.assertEqual(created["status"], "active")
        self.assertEqual([item["employee_id"] for item in created["assignments"]], ["emp-1"])

        listed = self.client.get("/api/geofences", headers=_auth())
        self.assertEqual([item["id"] for item in listed.json()], [created["id"]])

        other_org = self.client.get(f"/api/geofences/{created['id']}", headers=_auth(org="org-b"))
        self.assertEqual(other_org.status_code, 404)
        self.assertEqual(self.client.get("/api/geofences", headers=_auth(org="org-b")).json(), [])

        cross_create = self.client.post(
            "/api/geofences",
            json={
                "organization_id": "org-b",
                "name": "Foreign",
                "center": {"latitude": 41.0, "longitude": 29.0},
                "radius_m": 100,
            },
            headers=_auth(),
        )
        self.assertEqual(cross_create.status_code, 403)
        self.assertEqual(cross_create.json()["error"]["code"], "TENANCY_VIOLATION")

        patched = self.client.patch(
            f"/api/geofences/{created['id']}",
            json={"name": "Main Office", "radius_m": 250},
            headers=_auth(),
        )
        self.assertEqual(patched.status_code, 200, patched.text)
        self.assertEqual(patched.json()["name"], "Main Office")
        self.assertEqual(patched.json()["radius_m"], 250)

        with self.factory() as db:
            actions = list(db.scalars(select(AuditLog.action).order_by(AuditLog.id)))
        self.assertEqual(actions, ["EMPLOYEE_REGISTERED", "GEOFENCE_CREATED", "GEOFENCE_UPDATED"])

        archived = self.client.post(f"/api/geofences/{created['id']}/archive", headers=_auth())
        self.assertEqual(archived.json()["status"], "archived")
        reactivate = self.client.patch(
            f"/api/geofences/{created['id']}",
            json={"name": "Back"},
            headers=_auth(),
        )
        self.assertEqual(reactivate.status_code, 409)

    def test_location_ping_checks_employee_in_and_out(self) -> None:
        self._register()
        geofence = self._create_geofence(employee_ids=["emp-1"])
        employee_headers = _auth("emp-1", role="employee")

        entry = self.client.post(
            "/api/attendance/location",
            json={
                "employee_id": "emp-1",
                "location": {"latitude": 41.0, "longitude": 29.0},
                "ts_utc": "2026-10-19T09:07:00Z",
            },
            headers=employee_headers,
        )
        self.assertEqual(entry.status_code, 200, entry.text)
        body = entry.json()
        self.assertEqual(body["state"]["current_status"], "checked-in")
        self.assertEqual(len(body["events"]), 1)
        self.assertEqual(body["events"][0]["type"], "check-in")
        self.assertEqual(body["events"][0]["late_minutes"], 2)
        self.assertEqual(body["memberships"][0]["geofence_id"], geofence["id"])

        exit_ping = self.client.post(
            "/api/attendance/location",
            json={
                "employee_id": "emp-1",
                "location": {"latitude": 41.0045, "longitude": 29.0},
                "ts_utc": "2026-10-19T17:02:00Z",
            },
            headers=employee_headers,
        )
        self.assertEqual(exit_ping.json()["events"][0]["type"], "check-out")
        self.assertEqual(exit_ping.json()["events"][0]["total_hours"], 7.92)

        events = self.client.get("/api/attendance/employees/emp-1/events", headers=employee_headers)
        self.assertEqual([item["type"] for item in events.json()], ["check-in", "check-out"])

        activity = self.client.get(f"/api/attendance/geofences/{geofence['id']}/activity", headers=_auth())
        self.assertEqual(activity.status_code, 200)
        self.assertEqual(activity.json()["stats"]["check_in_count"], 1)
        self.assertEqual(activity.json()["stats"]["late_count"], 1)

    def test_employee_cannot_act_for_someone_else(self) -> None:
        self._register("emp-1")
        self._register("emp-2")
        response = self.client.post(
            "/api/attendance/location",
            json={"employee_id": "emp-2", "location": {"latitude": 41.0, "longitude": 29.0}},
            headers=_auth("emp-1", role="employee"),
        )
        self.assertEqual(response.status_code, 403)

    def test_employee_id_from_other_organization_conflicts(self) -> None:
        self._register("emp-1", org="org-a")
        response = self.client.post(
            "/api/attendance/employees",
            json={"id": "emp-1", "full_name": "Other Person"},
            headers=_auth(org="org-b"),
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_ID_CONFLICT")

    def test_manual_check_in_far_from_geofence_is_rejected(self) -> None:
        self._register()
        geofence = self._create_geofence(employee_ids=["emp-1"])
        response = self.client.post(
            "/api/attendance/check-in",
            json={
                "employee_id": "emp-1",
                "geofence_id": geofence["id"],
                "location": {"latitude": 41.45, "longitude": 29.0},
            },
            headers=_auth(),
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "OUTSIDE_GEOFENCE")

    def test_check_out_without_check_in_conflicts(self) -> None:
        self._register()
        geofence = self._create_geofence(employee_ids=["emp-1"])
        response = self.client.post(
            "/api/attendance/check-out",
            json={
                "employee_id": "emp-1",
                "geofence_id": geofence["id"],
                "location": {"latitude": 41.0, "longitude": 29.0},
            },
            headers=_auth(),
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "CHECKIN_REQUIRED")

    def test_inverted_range_is_rejected(self) -> None:
        self._register()
        response = self.client.get(
            "/api/attendance/employees/emp-1/events",
            params={"ts_from": "2026-10-20T00:00:00Z", "ts_to": "2026-10-19T00:00:00Z"},
            headers=_auth(),
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "INVALID_RANGE")


if __name__ == "__main__":
    unittest.main()
