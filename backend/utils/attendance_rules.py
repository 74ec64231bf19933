"""
Attendance Rules - قواعد طلب الحضور قبل الوصول لمحرك الحالة

الطلب مرفوض مباشرة (بدون أي تحقق من الموقع) إذا:
- employee_id أو action غير موجود
- action ليس check-in أو check-out
- latitude أو longitude غير موجود

وهنا أيضاً حساب تاريخ اليوم وساعات العمل.
"""

import os
from datetime import datetime, timezone, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from zoneinfo import ZoneInfo

from models.attendance import AttendanceAction
from utils.error_codes import ErrorCode, MissingField, InvalidAction


ATTENDANCE_TZ = ZoneInfo(os.environ.get('ATTENDANCE_TIMEZONE', 'UTC'))

MILLIS_PER_HOUR = Decimal(3_600_000)
HOURS_QUANTUM = Decimal("0.01")


def validate_attendance_request(
    employee_id: Optional[str],
    action: Optional[str],
    latitude: Optional[float],
    longitude: Optional[float]
) -> AttendanceAction:
    """التحقق الأساسي من حقول الطلب - يرجع الإجراء"""
    if not employee_id:
        raise MissingField("employee_id", "Employee ID and action are required")
    if not action:
        raise MissingField("action", "Employee ID and action are required")

    try:
        parsed = AttendanceAction(action)
    except ValueError:
        raise InvalidAction(details={"action": action, "allowed": [a.value for a in AttendanceAction]})

    if latitude is None or longitude is None:
        raise MissingField(
            "latitude" if latitude is None else "longitude",
            "Location is required for attendance recording",
            error_code=ErrorCode.ATTENDANCE_GPS_REQUIRED
        )

    return parsed


def attendance_date(now: datetime) -> str:
    """تاريخ اليوم (YYYY-MM-DD) حسب منطقة الحضور الزمنية"""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ATTENDANCE_TZ).strftime("%Y-%m-%d")


def to_iso(dt: datetime) -> str:
    """تخزين الأوقات بصيغة ISO بتوقيت UTC"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def working_hours_between(check_in: datetime, check_out: datetime) -> float:
    """
    ساعات العمل = (الخروج - الدخول) بالساعات، مقربة لمنزلتين (نصف للأعلى)

    Raises:
        ValueError: إذا كان الخروج قبل الدخول
    """
    delta = parse_iso(check_out) - parse_iso(check_in)
    if delta < timedelta(0):
        raise ValueError("check-out precedes check-in")
    millis = Decimal(delta // timedelta(milliseconds=1))
    hours = (millis / MILLIS_PER_HOUR).quantize(HOURS_QUANTUM, rounding=ROUND_HALF_UP)
    return float(hours)
