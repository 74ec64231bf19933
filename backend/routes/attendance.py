from fastapi import APIRouter, Depends
from pydantic import BaseModel
from pymongo.errors import ConnectionFailure
from typing import Optional, List
from datetime import datetime, timezone
import asyncio
import os

from database import get_db
from models.attendance import GPSReading, record_key
from utils.auth import require_roles, CORRECTION_ROLES
from utils.attendance_rules import attendance_date
from utils.error_codes import MissingField, TransientError
from services.attendance_service import AttendanceStateMachine, process_attendance_action
from services.audit_service import AuditSink, BufferedAuditSink, MongoAuditSink, get_audit_trail
from services.gps_integrity import (
    validate_integrity,
    validate_location_consistency,
    combine_results,
)

router = APIRouter(prefix="/api/attendance", tags=["attendance"])

# المهلة الكلية لطلب الدخول/الخروج (ثواني)
REQUEST_TIMEOUT_SECONDS = float(os.environ.get('ATTENDANCE_REQUEST_TIMEOUT_SECONDS', 5))


def get_now():
    """الوقت الحالي من الخادم - لا نثق بوقت الجهاز"""
    return datetime.now(timezone.utc)


def get_audit_sink(db=Depends(get_db)) -> AuditSink:
    return MongoAuditSink(db)


async def run_with_deadline(coro, timeout: float = None):
    """المهلة وانقطاع التخزين = خطأ مؤقت قابل لإعادة المحاولة"""
    try:
        return await asyncio.wait_for(coro, timeout=timeout or REQUEST_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise TransientError("Attendance request timed out, please retry")
    except ConnectionFailure as e:
        raise TransientError("Attendance storage is unavailable, please retry", details={"reason": str(e)})


class AttendanceActionRequest(BaseModel):
    employee_id: Optional[str] = None
    action: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    notes: Optional[str] = None
    # وقت التقاط القراءة من الجهاز - الافتراضي وقت الخادم
    captured_at: Optional[datetime] = None


class AttendanceCorrectionRequest(BaseModel):
    employee_id: str
    date: str  # YYYY-MM-DD
    reason: Optional[str] = None
    check_in_time: Optional[datetime] = None
    check_out_time: Optional[datetime] = None


class PreviousLocation(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: datetime


class GPSValidationRequest(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: Optional[datetime] = None
    previous_locations: List[PreviousLocation] = []


@router.post("/daily")
async def record_attendance(
    req: AttendanceActionRequest,
    db=Depends(get_db),
    now: datetime = Depends(get_now),
    sink: AuditSink = Depends(get_audit_sink)
):
    """
    Check-in / check-out:
    - Required fields validated before anything else
    - GPS integrity (anti-spoofing)
    - Geofence against the employee's assigned work locations
    - One check-in and one check-out per employee per day
    - Audit events are written after the decision, outside the request deadline
    """
    audit = BufferedAuditSink(sink)
    try:
        result = await run_with_deadline(process_attendance_action(
            db,
            employee_id=req.employee_id,
            action=req.action,
            latitude=req.latitude,
            longitude=req.longitude,
            accuracy=req.accuracy,
            captured_at=req.captured_at,
            notes=req.notes,
            now=now,
            audit_sink=audit,
        ))
    finally:
        await audit.flush()
    verb = "Check-in" if result['action'] == "check-in" else "Check-out"
    return {
        "success": True,
        "message": f"{verb} recorded successfully",
        "data": result['record'],
        "geofence_validation": result['geofence'],
        "gps_validation": result['gps_validation'],
    }


async def _find_daily_records(db, query: dict) -> list:
    records = await db.daily_attendance.find(query, {"_id": 0}).sort(
        [("date", -1), ("check_in_time", -1)]
    ).to_list(1000)

    employee_ids = list({r['employee_id'] for r in records})
    employees = await db.employees.find(
        {"id": {"$in": employee_ids}}, {"_id": 0, "id": 1, "full_name": 1}
    ).to_list(len(employee_ids) or 1)
    emp_map = {e['id']: e for e in employees}

    for record in records:
        emp = emp_map.get(record['employee_id'], {})
        record['employee'] = {"name": emp.get('full_name') or record.get('employee_name') or "Unknown Employee"}
    return records


@router.get("/daily")
async def list_daily_attendance(
    employee_id: Optional[str] = None,
    date: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db=Depends(get_db),
    now: datetime = Depends(get_now)
):
    """سجلات الحضور اليومية - بتاريخ واحد أو فترة"""
    query = {}
    if employee_id:
        query["employee_id"] = employee_id
    if start_date and end_date:
        query["date"] = {"$gte": start_date, "$lte": end_date}
    else:
        query["date"] = date or attendance_date(now)

    records = await run_with_deadline(_find_daily_records(db, query))
    return {"success": True, "data": records, "count": len(records)}


@router.get("/daily/today")
async def get_today_attendance(employee_id: str, db=Depends(get_db), now: datetime = Depends(get_now)):
    today = attendance_date(now)
    record = await run_with_deadline(AttendanceStateMachine(db).get_record(employee_id, today))
    return {
        "date": today,
        "status": record['status'] if record else "no-record",
        "record": record,
    }


@router.put("/daily/correction")
async def correct_attendance(
    req: AttendanceCorrectionRequest,
    user=Depends(require_roles(*CORRECTION_ROLES)),
    db=Depends(get_db),
    now: datetime = Depends(get_now),
    sink: AuditSink = Depends(get_audit_sink)
):
    """تصحيح المشرف - يتجاوز فحص الموقع، السبب إلزامي"""
    actor_id = user.get('user_id') or user.get('sub')
    if not actor_id:
        raise MissingField("actor_id", "Token has no user id")

    audit = BufferedAuditSink(sink)
    try:
        record = await run_with_deadline(AttendanceStateMachine(db, audit).correct(
            req.employee_id,
            req.date,
            actor_id=actor_id,
            reason=req.reason,
            now=now,
            check_in_time=req.check_in_time,
            check_out_time=req.check_out_time,
        ))
    finally:
        await audit.flush()
    return {"success": True, "message": "Attendance record updated successfully", "data": record}


@router.get("/daily/{employee_id}/{date}/audit")
async def get_record_audit(employee_id: str, date: str, user=Depends(require_roles(*CORRECTION_ROLES)), db=Depends(get_db)):
    return await run_with_deadline(get_audit_trail(db, record_key(employee_id, date)))


@router.post("/gps-validation")
async def validate_gps(req: GPSValidationRequest, now: datetime = Depends(get_now)):
    """فحص سلامة قراءة GPS بدون تسجيل حضور"""
    if req.latitude is None or req.longitude is None:
        raise MissingField("latitude" if req.latitude is None else "longitude", "Latitude and longitude are required")

    reading = GPSReading(
        latitude=req.latitude,
        longitude=req.longitude,
        accuracy=req.accuracy,
        captured_at=req.timestamp or now,
    )
    previous = [
        GPSReading(latitude=p.latitude, longitude=p.longitude, captured_at=p.timestamp)
        for p in req.previous_locations
    ]

    gps_validation = validate_integrity(reading, now)
    consistency_validation = validate_location_consistency(reading, previous)
    combined = combine_results(gps_validation, consistency_validation)

    return {
        "success": True,
        "validation": {
            **combined.model_dump(mode="json"),
            "gps_validation": gps_validation.model_dump(mode="json"),
            "consistency_validation": consistency_validation.model_dump(mode="json"),
        },
    }
