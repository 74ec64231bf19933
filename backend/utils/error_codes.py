# Error Codes System for the Attendance Engine
# نظام رموز الأخطاء

from datetime import datetime, timezone
from typing import Optional
import uuid

class ErrorCode:
    """نظام رموز الأخطاء الموحد"""

    # Attendance Errors (3xxx)
    ATTENDANCE_ALREADY_CHECKED_IN = ("E3001", "Already checked in today", "تم تسجيل الدخول مسبقاً اليوم")
    ATTENDANCE_NOT_CHECKED_IN = ("E3002", "No check-in record found for today", "لا يوجد تسجيل دخول لهذا اليوم")
    ATTENDANCE_OUTSIDE_LOCATION = ("E3003", "Outside allowed work location", "خارج نطاق موقع العمل المسموح")
    ATTENDANCE_GPS_REQUIRED = ("E3008", "Location is required for attendance recording", "يجب تفعيل تحديد الموقع")
    ATTENDANCE_NO_LOCATION = ("E3009", "No work locations assigned to this employee", "لا يوجد موقع عمل معين")
    ATTENDANCE_MISSING_FIELD = ("E3010", "Required field is missing", "حقل مطلوب مفقود")
    ATTENDANCE_INVALID_ACTION = ("E3011", "Action must be 'check-in' or 'check-out'", "الإجراء يجب أن يكون دخول أو خروج")
    ATTENDANCE_GPS_INTEGRITY = ("E3012", "GPS validation failed, please verify your location", "فشل التحقق من صحة الموقع")
    ATTENDANCE_ALREADY_CHECKED_OUT = ("E3013", "Already checked out today", "تم تسجيل الخروج مسبقاً اليوم")
    ATTENDANCE_STORAGE_CONFLICT = ("E3014", "Attendance record was modified concurrently", "تم تعديل السجل في نفس اللحظة")
    ATTENDANCE_INVALID_CORRECTION = ("E3015", "Invalid attendance correction", "تصحيح الحضور غير صالح")
    ATTENDANCE_RECORD_NOT_FOUND = ("E3016", "Attendance record not found", "سجل الحضور غير موجود")

    # General Errors (9xxx)
    GENERAL_NOT_FOUND = ("E9001", "Resource not found", "المورد غير موجود")
    GENERAL_SERVER_ERROR = ("E9003", "Internal server error", "خطأ في الخادم")
    GENERAL_TRANSIENT = ("E9005", "Service temporarily unavailable, please retry", "الخدمة غير متاحة مؤقتاً، أعد المحاولة")


def create_error_response(error_code: tuple, details=None, details_ar: str = None, retryable: bool = False):
    """
    إنشاء استجابة خطأ موحدة

    Args:
        error_code: tuple من (code, message_en, message_ar)
        details: تفاصيل إضافية (نص أو dict)
        details_ar: تفاصيل إضافية بالعربية
        retryable: هل يمكن إعادة المحاولة تلقائياً

    Returns:
        dict: استجابة الخطأ الموحدة
    """
    code, msg_en, msg_ar = error_code

    # إنشاء معرف فريد للخطأ
    error_id = f"{code}-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6].upper()}"

    return {
        "error": True,
        "error_code": code,
        "error_id": error_id,
        "message": msg_en,
        "message_ar": msg_ar,
        "details": details,
        "details_ar": details_ar,
        "retryable": retryable,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "support_message": f"If this error persists, contact support with reference: {error_id}",
    }


def format_error_message(error_code: tuple, details=None, details_ar: str = None, retryable: bool = False) -> dict:
    """تنسيق رسالة الخطأ للعرض"""
    response = create_error_response(error_code, details, details_ar, retryable)
    return {
        "detail": response
    }


# ============================================================
# استثناءات الحضور
# ============================================================

class AttendanceError(Exception):
    """الأساس لكل أخطاء محرك الحضور - كلها ظاهرة للعميل"""
    error_code = ErrorCode.GENERAL_SERVER_ERROR
    status_code = 500
    retryable = False

    def __init__(self, message: Optional[str] = None, details=None, details_ar: str = None):
        self.message = message or self.error_code[1]
        self.details = details
        self.details_ar = details_ar
        super().__init__(self.message)

    def to_response(self) -> dict:
        body = format_error_message(self.error_code, self.details, self.details_ar, self.retryable)
        body["detail"]["message"] = self.message
        return body


class MissingField(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_MISSING_FIELD
    status_code = 400

    def __init__(self, field: str, message: str = None, error_code: tuple = None):
        if error_code:
            self.error_code = error_code
        self.field = field
        super().__init__(message or f"{field} is required", details={"field": field})


class InvalidAction(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_INVALID_ACTION
    status_code = 400


class EmployeeNotFound(AttendanceError):
    error_code = ErrorCode.GENERAL_NOT_FOUND
    status_code = 404

    def __init__(self, employee_id: str):
        super().__init__("Employee not found", details={"employee_id": employee_id})


class NoWorkLocationAssigned(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_NO_LOCATION
    status_code = 403


class GeofenceViolation(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_OUTSIDE_LOCATION
    status_code = 403


class GPSIntegrityViolation(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_GPS_INTEGRITY
    status_code = 403


class AlreadyCheckedIn(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_ALREADY_CHECKED_IN
    status_code = 400


class AlreadyCheckedOut(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_ALREADY_CHECKED_OUT
    status_code = 400


class NoCheckInFound(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_NOT_CHECKED_IN
    status_code = 400


class StorageConflict(AttendanceError):
    """الكتابة الذرية خسرت السباق - يجب إعادة القراءة"""
    error_code = ErrorCode.ATTENDANCE_STORAGE_CONFLICT
    status_code = 409


class InvalidCorrection(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_INVALID_CORRECTION
    status_code = 400


class RecordNotFound(AttendanceError):
    error_code = ErrorCode.ATTENDANCE_RECORD_NOT_FOUND
    status_code = 404


class TransientError(AttendanceError):
    """الفئة الوحيدة الآمنة لإعادة المحاولة تلقائياً (مهلة / تخزين غير متاح)"""
    error_code = ErrorCode.GENERAL_TRANSIENT
    status_code = 503
    retryable = True
