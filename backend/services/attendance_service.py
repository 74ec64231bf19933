"""
Attendance Service - محرك الدخول والخروج اليومي
============================================================
- سجل واحد لكل (employee_id, date)
- دخول واحد وخروج واحد فقط في اليوم
- الحالة: no-record → checked-in → checked-out (لا رجوع ولا قفز)
- ساعات العمل تُحسب عند الخروج
- تصحيح المشرف: يتجاوز فحص الموقع لكن يتطلب سبب ومُنفذ ويُسجل في التدقيق

منع التسجيل المزدوج:
الكتابة ذرية ومشروطة - لا قراءة ثم كتابة منفصلة.
- الدخول: upsert بشرط check_in_time = null، والفهرس الفريد يرفض النسخة الثانية
- الخروج: find_one_and_update بشرط status = checked-in
- التصحيح: find_one_and_update بشرط version
القراءة المسبقة فقط لاختيار رسالة الخطأ المناسبة.
"""
import logging
from datetime import datetime
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from models.attendance import (
    AttendanceAction,
    AttendanceStatus,
    AuditEvent,
    GPSReading,
    GeofenceCode,
    GeofenceValidationResult,
    GPSIntegrityResult,
    record_key,
)
from services.audit_service import AuditSink, MongoAuditSink, record_safely
from services.gps_integrity import GPSIntegrityPolicy, validate_integrity, has_implausible_coordinates
from services.punch_validator import validate_geofence, geofence_not_evaluated
from services.work_location_resolver import WorkLocationResolver
from utils.attendance_rules import (
    validate_attendance_request,
    attendance_date,
    to_iso,
    parse_iso,
    working_hours_between,
)
from utils.error_codes import (
    AttendanceError,
    MissingField,
    EmployeeNotFound,
    NoWorkLocationAssigned,
    GeofenceViolation,
    GPSIntegrityViolation,
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    NoCheckInFound,
    StorageConflict,
    InvalidCorrection,
    RecordNotFound,
)

logger = logging.getLogger(__name__)


# أسماء أحداث التدقيق
AUDIT_CHECK_IN = "EMPLOYEE_CHECK_IN"
AUDIT_CHECK_OUT = "EMPLOYEE_CHECK_OUT"
AUDIT_CHECK_IN_REJECTED = "EMPLOYEE_CHECK_IN_REJECTED"
AUDIT_CHECK_OUT_REJECTED = "EMPLOYEE_CHECK_OUT_REJECTED"
AUDIT_CORRECTION = "SUPERVISOR_ATTENDANCE_CORRECTION"

# عدد المشاكل المعروضة في رسالة رفض GPS
TOP_ISSUES = 3


def validation_error(geofence: GeofenceValidationResult, integrity: GPSIntegrityResult) -> Optional[AttendanceError]:
    """
    الخطأ المناسب لنتائج التحقق - None إذا كلاهما صالح

    سلامة GPS أولاً: إذا القراءة مزيفة فقرار الدائرة بلا معنى.
    """
    if not integrity.is_valid:
        top = "; ".join(integrity.issues[:TOP_ISSUES])
        hint = "; ".join(integrity.recommendations[:TOP_ISSUES])
        return GPSIntegrityViolation(
            f"GPS validation failed (risk {integrity.risk_score}): {top}. {hint}".strip(),
            details=integrity.model_dump(mode="json")
        )

    if not geofence.is_valid:
        if geofence.code == GeofenceCode.NO_WORK_LOCATION:
            return NoWorkLocationAssigned(geofence.message, details=geofence.model_dump(mode="json"))
        if geofence.code == GeofenceCode.OUTSIDE_RADIUS:
            nearest = geofence.nearest_location
            return GeofenceViolation(
                "You must be at one of your designated work locations to check in/out. "
                f"Nearest location: {nearest.name} ({round(geofence.distance_meters)}m away)",
                details=geofence.model_dump(mode="json")
            )
        return GeofenceViolation(geofence.message, details=geofence.model_dump(mode="json"))

    return None


class AttendanceStateMachine:
    """المكوّن الوحيد المسموح له بتعديل السجل اليومي"""

    def __init__(self, db, audit_sink: Optional[AuditSink] = None, audit_timeout: Optional[float] = None):
        self.db = db
        self.audit_sink = audit_sink or MongoAuditSink(db)
        self.audit_timeout = audit_timeout

    async def get_record(self, employee_id: str, date: str) -> Optional[dict]:
        return await self.db.daily_attendance.find_one(
            {"employee_id": employee_id, "date": date},
            {"_id": 0}
        )

    # ==================== الدخول ====================

    async def check_in(
        self,
        employee_id: str,
        date: str,
        reading: GPSReading,
        geofence: GeofenceValidationResult,
        integrity: GPSIntegrityResult,
        now: datetime,
        notes: str = "",
        employee_name: Optional[str] = None
    ) -> dict:
        existing = await self.get_record(employee_id, date)
        if existing and existing.get('check_in_time'):
            error = AlreadyCheckedIn()
        else:
            error = validation_error(geofence, integrity)

        if error:
            await self._reject(AUDIT_CHECK_IN_REJECTED, employee_id, date, now, error, geofence, integrity)
            raise error

        fields = {
            "employee_name": employee_name,
            "check_in_time": to_iso(now),
            "check_in_location": reading.to_location(),
            "check_in_geofence": geofence.model_dump(mode="json"),
            "check_in_gps_integrity": integrity.model_dump(mode="json"),
            "check_in_notes": notes or "",
            "status": AttendanceStatus.CHECKED_IN.value,
            "working_hours": 0,
            "updated_at": to_iso(now),
        }

        try:
            await self._claim_check_in(employee_id, date, fields, now)
        except StorageConflict:
            # خسرنا السباق - نقرأ الحالة الحالية ونرجع خطأ الحالة
            current = await self.get_record(employee_id, date)
            error = self._state_error(AttendanceAction.CHECK_IN, current) or StorageConflict()
            logger.info(f"Concurrent check-in lost for {employee_id} on {date}")
            await self._reject(AUDIT_CHECK_IN_REJECTED, employee_id, date, now, error, geofence, integrity)
            raise error

        record = await self.get_record(employee_id, date)
        logger.info(f"Check-in accepted: {employee_id} on {date} at {fields['check_in_time']}")

        await self._emit(AUDIT_CHECK_IN, employee_id, date, now, {
            "employee_name": employee_name,
            "date": date,
            "check_in_time": fields['check_in_time'],
            "geofence_validation": "valid",
            "distance_meters": geofence.distance_meters,
            "gps_risk_score": integrity.risk_score,
        })
        return record

    async def _claim_check_in(self, employee_id: str, date: str, fields: dict, now: datetime) -> None:
        """upsert ذري - ينجح فقط إذا لا يوجد دخول لهذا اليوم"""
        try:
            await self.db.daily_attendance.update_one(
                {"employee_id": employee_id, "date": date, "check_in_time": None},
                {
                    "$set": fields,
                    "$setOnInsert": {
                        "id": record_key(employee_id, date),
                        "check_out_time": None,
                        "created_at": to_iso(now),
                        "corrections": [],
                    },
                    "$inc": {"version": 1},
                },
                upsert=True
            )
        except DuplicateKeyError:
            raise StorageConflict()

    # ==================== الخروج ====================

    async def check_out(
        self,
        employee_id: str,
        date: str,
        reading: GPSReading,
        geofence: GeofenceValidationResult,
        integrity: GPSIntegrityResult,
        now: datetime,
        notes: str = ""
    ) -> dict:
        existing = await self.get_record(employee_id, date)
        error = self._state_error(AttendanceAction.CHECK_OUT, existing)
        if error is None:
            error = validation_error(geofence, integrity)

        check_in_time = parse_iso(existing.get('check_in_time')) if existing else None
        working_hours = 0
        if error is None:
            try:
                working_hours = working_hours_between(check_in_time, now)
            except ValueError:
                error = NoCheckInFound("Check-out cannot precede the recorded check-in")

        if error:
            await self._reject(AUDIT_CHECK_OUT_REJECTED, employee_id, date, now, error, geofence, integrity)
            raise error

        fields = {
            "check_out_time": to_iso(now),
            "check_out_location": reading.to_location(),
            "check_out_geofence": geofence.model_dump(mode="json"),
            "check_out_gps_integrity": integrity.model_dump(mode="json"),
            "check_out_notes": notes or "",
            "status": AttendanceStatus.CHECKED_OUT.value,
            "working_hours": working_hours,
            "updated_at": to_iso(now),
        }

        # compare-and-swap على الحالة
        record = await self.db.daily_attendance.find_one_and_update(
            {
                "employee_id": employee_id,
                "date": date,
                "status": AttendanceStatus.CHECKED_IN.value,
                "check_in_time": existing['check_in_time'],
            },
            {"$set": fields, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER
        )

        if record is None:
            current = await self.get_record(employee_id, date)
            error = self._state_error(AttendanceAction.CHECK_OUT, current) or StorageConflict()
            logger.info(f"Concurrent check-out lost for {employee_id} on {date}")
            await self._reject(AUDIT_CHECK_OUT_REJECTED, employee_id, date, now, error, geofence, integrity)
            raise error
        record.pop('_id', None)

        logger.info(f"Check-out accepted: {employee_id} on {date}, {working_hours}h")

        await self._emit(AUDIT_CHECK_OUT, employee_id, date, now, {
            "employee_name": record.get('employee_name'),
            "date": date,
            "check_out_time": fields['check_out_time'],
            "working_hours": working_hours,
            "geofence_validation": "valid",
            "distance_meters": geofence.distance_meters,
            "gps_risk_score": integrity.risk_score,
        })
        return record

    # ==================== تصحيح المشرف ====================

    async def correct(
        self,
        employee_id: str,
        date: str,
        actor_id: str,
        reason: str,
        now: datetime,
        check_in_time: Optional[datetime] = None,
        check_out_time: Optional[datetime] = None
    ) -> dict:
        """
        تعديل مباشر للأوقات - بدون فحص الموقع

        - السبب والمُنفذ إلزاميان
        - الحالة تتحرك للأمام فقط
        - ساعات العمل تُعاد حسابها بنفس قاعدة التقريب
        """
        if not actor_id:
            raise MissingField("actor_id")
        if not reason or not reason.strip():
            raise MissingField("reason", "A reason is required for attendance corrections")
        if check_in_time is None and check_out_time is None:
            raise InvalidCorrection("Nothing to correct: provide check_in_time or check_out_time")

        existing = await self.get_record(employee_id, date)
        if not existing:
            raise RecordNotFound(details={"employee_id": employee_id, "date": date})

        # الأوقات بدون منطقة زمنية تُعامل كـ UTC
        new_in = parse_iso(check_in_time or existing.get('check_in_time'))
        new_out = parse_iso(check_out_time or existing.get('check_out_time'))

        if new_out and not new_in:
            raise InvalidCorrection("A check-out requires a check-in time")

        working_hours = existing.get('working_hours', 0)
        if new_in and new_out:
            try:
                working_hours = working_hours_between(new_in, new_out)
            except ValueError:
                raise InvalidCorrection("Check-out time cannot be earlier than check-in time")

        status = existing.get('status', AttendanceStatus.NO_RECORD.value)
        if new_out:
            status = AttendanceStatus.CHECKED_OUT.value
        elif new_in and status == AttendanceStatus.NO_RECORD.value:
            status = AttendanceStatus.CHECKED_IN.value

        after = {
            "check_in_time": to_iso(new_in) if new_in else None,
            "check_out_time": to_iso(new_out) if new_out else None,
            "working_hours": working_hours,
            "status": status,
        }
        before = {field: existing.get(field) for field in after}
        entry = {
            "actor_id": actor_id,
            "reason": reason.strip(),
            "before": before,
            "after": after,
            "timestamp": to_iso(now),
        }

        record = await self.db.daily_attendance.find_one_and_update(
            {"employee_id": employee_id, "date": date, "version": existing.get('version')},
            {
                "$set": {
                    **after,
                    "updated_at": to_iso(now),
                    "last_modified_by": actor_id,
                    "modification_reason": entry['reason'],
                },
                "$push": {"corrections": entry},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER
        )
        if record is None:
            raise StorageConflict("Attendance record changed while being corrected, please reload")
        record.pop('_id', None)

        logger.info(f"Attendance corrected by {actor_id}: {employee_id} on {date}")
        await self._emit(AUDIT_CORRECTION, employee_id, date, now, {
            "date": date,
            "changes": {"before": before, "after": after},
            "reason": entry['reason'],
        }, actor_id=actor_id)
        return record

    # ==================== مساعدات ====================

    @staticmethod
    def _state_error(action: AttendanceAction, record: Optional[dict]) -> Optional[AttendanceError]:
        """خطأ الحالة لإجراء معين على السجل الحالي - None إذا مسموح"""
        has_check_in = bool(record and record.get('check_in_time'))
        if action == AttendanceAction.CHECK_IN:
            return AlreadyCheckedIn() if has_check_in else None

        if not has_check_in:
            return NoCheckInFound()
        if record.get('status') == AttendanceStatus.CHECKED_OUT.value or record.get('check_out_time'):
            return AlreadyCheckedOut()
        return None

    async def _reject(self, action, employee_id, date, now, error, geofence, integrity):
        logger.info(f"{action} for {employee_id} on {date}: {error.error_code[0]} {error.message}")
        await self._emit(action, employee_id, date, now, {
            "date": date,
            "error_code": error.error_code[0],
            "reason": error.message,
            "geofence_code": geofence.code.value,
            "distance_meters": geofence.distance_meters,
            "gps_risk_score": integrity.risk_score,
            "gps_issues": integrity.issues,
        })

    async def _emit(self, action: str, employee_id: str, date: str, now: datetime, metadata: dict, actor_id: str = None):
        """فشل سجل التدقيق لا يلغي أي عملية حضور مقبولة"""
        event = AuditEvent(
            action=action,
            entity_id=record_key(employee_id, date),
            actor_id=actor_id or employee_id,
            timestamp=to_iso(now),
            metadata=metadata,
        )
        await record_safely(self.audit_sink, event, self.audit_timeout)


# ============================================================
# معالجة طلب الحضور الكامل
# ============================================================

async def process_attendance_action(
    db,
    employee_id: Optional[str],
    action: Optional[str],
    latitude: Optional[float],
    longitude: Optional[float],
    now: datetime,
    accuracy: Optional[float] = None,
    captured_at: Optional[datetime] = None,
    notes: Optional[str] = None,
    policy: Optional[GPSIntegrityPolicy] = None,
    audit_sink: Optional[AuditSink] = None
) -> dict:
    """
    ترتيب المعالجة:
    1. التحقق من حقول الطلب (بدون أي تدقيق)
    2. الموظف ومواقعه
    3. سلامة GPS
    4. الدائرة (تُتجاوز إذا الإحداثيات مستحيلة)
    5. محرك الحالة

    Returns:
        {"action": ..., "record": ..., "geofence": ..., "gps_validation": ...}
    """
    parsed_action = validate_attendance_request(employee_id, action, latitude, longitude)

    employee = await db.employees.find_one({"id": employee_id}, {"_id": 0})
    if not employee:
        raise EmployeeNotFound(employee_id)
    employee_name = employee.get('full_name') or (employee.get('personal_details') or {}).get('name')

    locations = await WorkLocationResolver(db).resolve(employee)

    reading = GPSReading(
        latitude=latitude,
        longitude=longitude,
        accuracy=accuracy,
        captured_at=captured_at or now,
    )
    integrity = validate_integrity(reading, now, policy)
    if has_implausible_coordinates(integrity):
        geofence = geofence_not_evaluated("Location rejected: implausible coordinates")
    else:
        geofence = validate_geofence(reading, locations)

    logger.info(
        f"{parsed_action.value} {employee_id}: geofence={geofence.code.value} "
        f"gps_risk={integrity.risk_score} issues={integrity.triggered_checks}"
    )

    machine = AttendanceStateMachine(db, audit_sink)
    date = attendance_date(now)
    if parsed_action == AttendanceAction.CHECK_IN:
        record = await machine.check_in(
            employee_id, date, reading, geofence, integrity, now,
            notes=notes or "", employee_name=employee_name
        )
    else:
        record = await machine.check_out(
            employee_id, date, reading, geofence, integrity, now, notes=notes or ""
        )

    return {
        "action": parsed_action.value,
        "record": record,
        "geofence": geofence.model_dump(mode="json"),
        "gps_validation": integrity.model_dump(mode="json"),
    }
