"""
Attendance API - full request flow through FastAPI with an in-memory database
"""
import asyncio
from datetime import datetime, timezone

import pytest
from pymongo.errors import ConnectionFailure

from routes.attendance import run_with_deadline, get_audit_sink
from services import audit_service
from routes import attendance as attendance_routes
from database import get_db
from server import app
from utils.error_codes import TransientError

from conftest import TEST_DATE, run, make_token, SlowAuditSink, UnreachableDB


DAILY = "/api/attendance/daily"


def punch(client, employee_id="EMP-001", action="check-in", latitude=9.0005, longitude=38.7000, **extra):
    body = {"employee_id": employee_id, "action": action, "latitude": latitude, "longitude": longitude,
            "accuracy": 15.0, **extra}
    return client.post(DAILY, json=body)


def auth_header(role, user_id="SUP-1"):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def error_code(response):
    return response.json()['detail']['error_code']


class TestRequestValidation:

    @pytest.mark.parametrize("body", [
        {"action": "check-in", "latitude": 9.0, "longitude": 38.7},
        {"employee_id": "EMP-001", "latitude": 9.0, "longitude": 38.7},
        {},
    ])
    def test_missing_employee_or_action(self, client, body):
        response = client.post(DAILY, json=body)
        assert response.status_code == 400
        assert error_code(response) == "E3010"

    def test_invalid_action(self, client):
        response = punch(client, action="lunch-break")
        assert response.status_code == 400
        assert error_code(response) == "E3011"

    @pytest.mark.parametrize("latitude,longitude", [(None, 38.7), (9.0, None), (None, None)])
    def test_missing_coordinates(self, client, latitude, longitude):
        response = punch(client, latitude=latitude, longitude=longitude)
        assert response.status_code == 400
        assert error_code(response) == "E3008"

    def test_unknown_employee(self, client):
        response = punch(client, employee_id="EMP-404")
        assert response.status_code == 404
        assert error_code(response) == "E9001"

    def test_rejected_requests_store_nothing(self, client, db):
        punch(client, action="lunch-break")
        punch(client, latitude=None)
        assert run(db.daily_attendance.count_documents({})) == 0
        assert run(db.audit_logs.count_documents({})) == 0


class TestCheckInFlow:

    def test_check_in_at_head_office(self, client, db):
        response = punch(client)
        assert response.status_code == 200

        body = response.json()
        assert body['success'] is True
        assert body['message'] == "Check-in recorded successfully"
        assert body['data']['status'] == "checked-in"
        assert body['data']['date'] == TEST_DATE
        assert body['geofence_validation']['is_valid'] is True
        assert body['geofence_validation']['nearest_location']['id'] == "site-hq"
        assert body['gps_validation']['is_valid'] is True
        assert body['gps_validation']['risk_score'] < 70

        logs = run(db.audit_logs.find({}, {"_id": 0}).to_list(10))
        assert [log['action'] for log in logs] == ["EMPLOYEE_CHECK_IN"]

    def test_null_island_rejected_before_geofence(self, client, db):
        response = punch(client, latitude=0.0, longitude=0.0)
        assert response.status_code == 403
        assert error_code(response) == "E3012"
        assert run(db.daily_attendance.count_documents({})) == 0

        log = run(db.audit_logs.find_one({}, {"_id": 0}))
        assert log['action'] == "EMPLOYEE_CHECK_IN_REJECTED"
        assert log['metadata']['geofence_code'] == "not_evaluated"

    def test_employee_without_sites(self, client):
        response = punch(client, employee_id="EMP-NOSITE")
        assert response.status_code == 403
        assert error_code(response) == "E3009"

    def test_outside_geofence(self, client):
        response = punch(client, latitude=9.0123, longitude=38.7001)
        assert response.status_code == 403
        assert error_code(response) == "E3003"
        assert "Head Office" in response.json()['detail']['message']

    def test_second_site_accepted_for_multi_site_employee(self, client):
        response = punch(client, employee_id="EMP-002", latitude=9.0301, longitude=38.7601)
        assert response.status_code == 200
        assert response.json()['geofence_validation']['nearest_location']['id'] == "site-branch"

    def test_double_check_in(self, client):
        punch(client)
        response = punch(client)
        assert response.status_code == 400
        assert error_code(response) == "E3001"

    def test_stale_device_reading_is_flagged(self, client, clock):
        response = punch(client, captured_at="2026-03-02T08:50:00Z")
        assert response.status_code == 200
        assert "stale_timestamp" in response.json()['gps_validation']['triggered_checks']


class TestCheckOutFlow:

    def test_full_day(self, client, clock):
        punch(client)
        clock.now = datetime(2026, 3, 2, 17, 30, tzinfo=timezone.utc)
        response = punch(client, action="check-out")

        assert response.status_code == 200
        body = response.json()
        assert body['message'] == "Check-out recorded successfully"
        assert body['data']['status'] == "checked-out"
        assert body['data']['working_hours'] == 8.5

        again = punch(client, action="check-out")
        assert again.status_code == 400
        assert error_code(again) == "E3013"

    def test_check_out_without_check_in(self, client):
        response = punch(client, action="check-out")
        assert response.status_code == 400
        assert error_code(response) == "E3002"


class TestQueries:

    def test_today_before_and_after_check_in(self, client):
        before = client.get(f"{DAILY}/today", params={"employee_id": "EMP-001"}).json()
        assert before == {"date": TEST_DATE, "status": "no-record", "record": None}

        punch(client)
        after = client.get(f"{DAILY}/today", params={"employee_id": "EMP-001"}).json()
        assert after['status'] == "checked-in"
        assert after['record']['employee_id'] == "EMP-001"

    def test_list_for_today_includes_employee_name(self, client):
        punch(client)
        punch(client, employee_id="EMP-002", latitude=9.0301, longitude=38.7601)

        body = client.get(DAILY).json()
        assert body['count'] == 2
        names = {r['employee_id']: r['employee']['name'] for r in body['data']}
        assert names == {"EMP-001": "Abebe Kebede", "EMP-002": "Sara Tesfaye"}

    def test_list_filters_by_employee_and_range(self, client):
        punch(client)
        body = client.get(DAILY, params={
            "employee_id": "EMP-001", "start_date": "2026-03-01", "end_date": "2026-03-31"
        }).json()
        assert body['count'] == 1

        other_day = client.get(DAILY, params={"date": "2026-03-01"}).json()
        assert other_day['count'] == 0


class TestCorrection:

    def body(self, **overrides):
        return {
            "employee_id": "EMP-001",
            "date": TEST_DATE,
            "reason": "Phone battery died",
            "check_out_time": "2026-03-02T17:00:00Z",
            **overrides,
        }

    def test_requires_token(self, client):
        response = client.put(f"{DAILY}/correction", json=self.body())
        assert response.status_code in (401, 403)

    def test_employee_role_is_forbidden(self, client):
        punch(client)
        response = client.put(f"{DAILY}/correction", json=self.body(), headers=auth_header("employee", "EMP-001"))
        assert response.status_code == 403

    def test_supervisor_can_add_check_out(self, client, db):
        punch(client)
        response = client.put(f"{DAILY}/correction", json=self.body(), headers=auth_header("supervisor"))
        assert response.status_code == 200

        record = response.json()['data']
        assert record['status'] == "checked-out"
        assert record['working_hours'] == 8.0
        assert record['last_modified_by'] == "SUP-1"
        assert len(record['corrections']) == 1

        audit = client.get(f"{DAILY}/EMP-001/{TEST_DATE}/audit", headers=auth_header("hr")).json()
        correction = next(e for e in audit if e['action'] == "SUPERVISOR_ATTENDANCE_CORRECTION")
        assert correction['actor_id'] == "SUP-1"
        assert correction['metadata']['reason'] == "Phone battery died"

    def test_reason_required(self, client):
        punch(client)
        response = client.put(f"{DAILY}/correction", json=self.body(reason=""), headers=auth_header("admin"))
        assert response.status_code == 400
        assert error_code(response) == "E3010"

    def test_no_record_to_correct(self, client):
        response = client.put(f"{DAILY}/correction", json=self.body(), headers=auth_header("hr"))
        assert response.status_code == 404
        assert error_code(response) == "E3016"

    def test_check_out_before_check_in(self, client):
        punch(client)
        response = client.put(
            f"{DAILY}/correction",
            json=self.body(check_out_time="2026-03-02T08:00:00Z"),
            headers=auth_header("supervisor")
        )
        assert response.status_code == 400
        assert error_code(response) == "E3015"

    def test_times_without_timezone_are_utc(self, client):
        punch(client)
        response = client.put(
            f"{DAILY}/correction",
            json=self.body(check_in_time="2026-03-02T08:30:00", check_out_time="2026-03-02T17:30:00"),
            headers=auth_header("supervisor")
        )
        assert response.status_code == 200

        record = response.json()['data']
        assert record['working_hours'] == 9.0
        assert record['check_in_time'] == "2026-03-02T08:30:00+00:00"
        assert record['check_out_time'] == "2026-03-02T17:30:00+00:00"

    def test_check_out_without_timezone_against_stored_check_in(self, client):
        punch(client)
        response = client.put(
            f"{DAILY}/correction",
            json=self.body(check_out_time="2026-03-02T17:30:00"),
            headers=auth_header("supervisor")
        )
        assert response.status_code == 200
        assert response.json()['data']['working_hours'] == 8.5

    def test_revoked_token(self, client, db):
        token = make_token("SUP-1", "supervisor", jti="revoked-session")
        run(db.revoked_tokens.insert_one({"token_id": "revoked-session"}))

        response = client.put(
            f"{DAILY}/correction", json=self.body(), headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


class TestGPSValidationEndpoint:

    def test_genuine_reading(self, client):
        response = client.post("/api/attendance/gps-validation", json={
            "latitude": 9.0005, "longitude": 38.7, "accuracy": 12
        })
        validation = response.json()['validation']
        assert validation['is_valid'] is True
        assert validation['gps_validation']['risk_score'] == 0
        assert validation['consistency_validation']['risk_score'] == 0

    def test_spoofed_reading(self, client):
        response = client.post("/api/attendance/gps-validation", json={"latitude": 0, "longitude": 0})
        validation = response.json()['validation']
        assert validation['is_valid'] is False
        assert "null_island" in validation['gps_validation']['triggered_checks']

    def test_teleportation_between_readings(self, client):
        response = client.post("/api/attendance/gps-validation", json={
            "latitude": 9.0005, "longitude": 38.7, "accuracy": 12,
            "previous_locations": [
                {"latitude": 51.5074, "longitude": -0.1278, "timestamp": "2026-03-02T08:40:00Z"}
            ],
        })
        validation = response.json()['validation']
        assert validation['is_valid'] is False
        assert validation['consistency_validation']['triggered_checks'] == ["impossible_travel"]

    def test_coordinates_required(self, client):
        response = client.post("/api/attendance/gps-validation", json={"latitude": 9.0})
        assert response.status_code == 400


class TestWorkLocationsEndpoint:

    def test_multi_site_employee(self, client):
        body = client.get("/api/work-locations/employee/EMP-002").json()
        assert body['count'] == 2
        assert [loc['id'] for loc in body['locations']] == ["site-branch", "site-hq"]

    def test_unknown_employee(self, client):
        response = client.get("/api/work-locations/employee/EMP-404")
        assert response.status_code == 404


class TestDeadline:

    def test_timeout_becomes_transient_error(self):
        with pytest.raises(TransientError) as exc:
            run(run_with_deadline(asyncio.sleep(1), timeout=0.01))
        assert exc.value.retryable is True
        assert exc.value.status_code == 503

    def test_storage_outage_becomes_transient_error(self):
        async def unreachable():
            raise ConnectionFailure("no primary")

        with pytest.raises(TransientError):
            run(run_with_deadline(unreachable()))

    def test_fast_call_passes_through(self):
        async def quick():
            return "ok"

        assert run(run_with_deadline(quick(), timeout=1)) == "ok"


class TestSlowAuditLog:

    @pytest.fixture(autouse=True)
    def short_deadlines(self, monkeypatch):
        monkeypatch.setattr(attendance_routes, "REQUEST_TIMEOUT_SECONDS", 0.5)
        monkeypatch.setattr(audit_service, "AUDIT_TIMEOUT_SECONDS", 0.05)

    def test_accepted_check_in_is_not_turned_into_timeout(self, client, db):
        app.dependency_overrides[get_audit_sink] = lambda: SlowAuditSink(delay=5)

        response = punch(client)
        assert response.status_code == 200
        assert response.json()['data']['status'] == "checked-in"

        retry = punch(client)
        assert error_code(retry) == "E3001"

    def test_accepted_correction_is_not_turned_into_timeout(self, client):
        punch(client)
        app.dependency_overrides[get_audit_sink] = lambda: SlowAuditSink(delay=5)

        response = client.put(f"{DAILY}/correction", json={
            "employee_id": "EMP-001",
            "date": TEST_DATE,
            "reason": "Forgot to check out",
            "check_out_time": "2026-03-02T17:00:00Z",
        }, headers=auth_header("supervisor"))
        assert response.status_code == 200
        assert response.json()['data']['status'] == "checked-out"


class TestStorageOutage:

    @pytest.fixture(autouse=True)
    def unreachable(self, client):
        app.dependency_overrides[get_db] = lambda: UnreachableDB()

    def assert_transient(self, response):
        assert response.status_code == 503
        body = response.json()['detail']
        assert body['error_code'] == "E9005"
        assert body['retryable'] is True

    def test_check_in(self, client):
        self.assert_transient(punch(client))

    def test_list(self, client):
        self.assert_transient(client.get(DAILY))

    def test_today(self, client):
        self.assert_transient(client.get(f"{DAILY}/today", params={"employee_id": "EMP-001"}))

    def test_work_locations(self, client):
        self.assert_transient(client.get("/api/work-locations/employee/EMP-001"))

    def test_token_check(self, client):
        response = client.get(f"{DAILY}/EMP-001/{TEST_DATE}/audit", headers=auth_header("hr"))
        self.assert_transient(response)


class TestHealth:

    def test_health_and_security_headers(self, client):
        response = client.get("/api/health")
        assert response.json()['status'] == "ok"
        assert response.headers['X-Content-Type-Options'] == "nosniff"
