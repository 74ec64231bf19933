"""
Attendance Models - نماذج الحضور اليومي والتحقق من الموقع
"""
from enum import Enum
from typing import Optional, List
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_RADIUS_METERS = 100


class AttendanceStatus(str, Enum):
    """حالات السجل اليومي - لا تتحرك إلا للأمام"""
    NO_RECORD = "no-record"
    CHECKED_IN = "checked-in"
    CHECKED_OUT = "checked-out"


class AttendanceAction(str, Enum):
    CHECK_IN = "check-in"
    CHECK_OUT = "check-out"


class WorkLocation(BaseModel):
    """موقع عمل - دائرة حول إحداثيات الموقع"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = "Work Location"
    latitude: float
    longitude: float
    radius_meters: float = Field(default=DEFAULT_RADIUS_METERS, gt=0)


class GPSReading(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None  # بالمتر
    captured_at: datetime

    @field_validator("captured_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # الأوقات بدون منطقة زمنية تُعامل كـ UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_location(self) -> Optional[dict]:
        if not self.has_coordinates:
            return None
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "captured_at": self.captured_at.isoformat(),
        }


class GeofenceCode(str, Enum):
    VERIFIED = "verified"
    OUTSIDE_RADIUS = "outside_radius"
    NO_WORK_LOCATION = "no_work_location"
    NO_LOCATION_PROVIDED = "no_location_provided"
    NOT_EVALUATED = "not_evaluated"


class GeofenceValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    code: GeofenceCode
    distance_meters: Optional[float] = None
    nearest_location: Optional[WorkLocation] = None
    message: str


class GPSIntegrityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    risk_score: int = Field(ge=0, le=100)
    issues: List[str] = []
    recommendations: List[str] = []
    triggered_checks: List[str] = []


class DailyAttendanceRecord(BaseModel):
    """
    السجل اليومي - مفتاحه الطبيعي (employee_id, date)

    working_hours تُحسب مرة واحدة عند الانتقال checked-in → checked-out
    أو عند تصحيح المشرف لأحد الوقتين.
    """
    id: str
    employee_id: str
    employee_name: Optional[str] = None
    date: str  # YYYY-MM-DD

    # الدخول
    check_in_time: Optional[str] = None
    check_in_location: Optional[dict] = None
    check_in_geofence: Optional[dict] = None
    check_in_gps_integrity: Optional[dict] = None
    check_in_notes: str = ""

    # الخروج
    check_out_time: Optional[str] = None
    check_out_location: Optional[dict] = None
    check_out_geofence: Optional[dict] = None
    check_out_gps_integrity: Optional[dict] = None
    check_out_notes: str = ""

    status: AttendanceStatus = AttendanceStatus.NO_RECORD
    working_hours: float = 0

    # التدقيق
    version: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    corrections: List[dict] = []  # سجل تصحيحات المشرفين


class AuditEvent(BaseModel):
    action: str
    entity_type: str = "daily_attendance"
    entity_id: str
    actor_id: str
    timestamp: str
    metadata: dict = {}


def record_key(employee_id: str, date: str) -> str:
    """المعرف الثابت للسجل اليومي"""
    return f"{employee_id}_{date}"
