"""
Shared fixtures - in-memory MongoDB (mongomock-motor) and a fixed server clock
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import ConnectionFailure

from database import get_db, ensure_indexes
from models.attendance import GPSReading, GeofenceCode, GeofenceValidationResult, GPSIntegrityResult, WorkLocation
from routes.attendance import get_now
from server import app
from utils.auth import SECRET_KEY, ALGORITHM


TEST_DATE = "2026-03-02"

# موقع العمل في سيناريو الاختبار الكامل
HQ_SITE = {
    "id": "site-hq",
    "name": "Head Office",
    "latitude": 9.0000,
    "longitude": 38.7000,
    "radius_meters": 100,
    "is_active": True,
}

BRANCH_SITE = {
    "id": "site-branch",
    "name": "Branch Office",
    "latitude": 9.0300,
    "longitude": 38.7600,
    "radius_meters": 150,
    "is_active": True,
}


def run(coro):
    return asyncio.run(coro)


class Clock:
    """ساعة الخادم القابلة للتحكم"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self):
        return self.now


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    async def record(self, event):
        self.events.append(event)


class FailingAuditSink:
    async def record(self, event):
        raise RuntimeError("audit store down")


class SlowAuditSink:
    """سجل تدقيق عالق - لا يرد قبل delay ثانية"""

    def __init__(self, delay=5):
        self.delay = delay
        self.events = []

    async def record(self, event):
        await asyncio.sleep(self.delay)
        self.events.append(event)


class UnreachableCollection:
    def find(self, *args, **kwargs):
        raise ConnectionFailure("no primary available")

    async def find_one(self, *args, **kwargs):
        raise ConnectionFailure("no primary available")


class UnreachableDB:
    """قاعدة بيانات منقطعة - كل مجموعة ترفع ConnectionFailure"""

    def __getattr__(self, name):
        return UnreachableCollection()


def make_token(user_id, role, jti=None):
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "role": role,
        "iat": now,
        "exp": now + timedelta(hours=1),
        "jti": jti or uuid.uuid4().hex,
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


@pytest.fixture
def db():
    database = AsyncMongoMockClient()["attendance_test"]
    run(ensure_indexes(database))
    run(database.work_locations.insert_many([dict(HQ_SITE), dict(BRANCH_SITE)]))
    run(database.employees.insert_many([
        {"id": "EMP-001", "full_name": "Abebe Kebede", "work_locations": ["site-hq"]},
        {"id": "EMP-002", "full_name": "Sara Tesfaye", "work_locations": ["site-branch", "site-hq"]},
        {"id": "EMP-NOSITE", "full_name": "No Site", "work_locations": []},
    ]))
    return database


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def client(db, clock):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_now] = clock
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


def make_reading(now, latitude=9.0005, longitude=38.7000, accuracy=15.0):
    return GPSReading(latitude=latitude, longitude=longitude, accuracy=accuracy, captured_at=now)


def valid_geofence():
    return GeofenceValidationResult(
        is_valid=True,
        code=GeofenceCode.VERIFIED,
        distance_meters=55.6,
        nearest_location=WorkLocation(**{k: HQ_SITE[k] for k in ("id", "name", "latitude", "longitude", "radius_meters")}),
        message="Location verified! You are 56m from Head Office.",
    )


def valid_integrity():
    return GPSIntegrityResult(is_valid=True, risk_score=0)
