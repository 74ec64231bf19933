"""
GPS Integrity Service - كشف التلاعب بالموقع
============================================================
فحص مستقل عن دائرة الموقع: هل القراءة صادرة من حساس حقيقي
أم من تطبيق موقع وهمي / قراءة معادة؟

كل فحص له اسم ووزن، ومجموع الأوزان هو risk_score (بحد أقصى 100).
القراءة مرفوضة إذا risk_score >= rejection_threshold.

الفحوصات (بالترتيب):
1. خط عرض مستحيل
2. خط طول مستحيل
3. (0, 0) - القيمة الافتراضية لتطبيقات التزييف
4. دقة غير مُرسلة
5. دقة صفر أو سالبة
6. دقة مثالية بشكل مريب
7. دقة ضعيفة جداً لا تكفي لقرار الدائرة
8. توقيت قديم (إعادة إرسال)
9. توقيت في المستقبل (تلاعب بالساعة)
10. إحداثيات مقربة (إدخال يدوي)

"now" يُمرر من المستدعي - لا نقرأ ساعة النظام هنا.
"""
import os
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional

from pydantic import BaseModel

from models.attendance import GPSReading, GPSIntegrityResult
from services.punch_validator import haversine_distance


MAX_RISK_SCORE = 100

# التنقل المستحيل: أكثر من 1000 كم في أقل من ساعة
TELEPORT_DISTANCE_METERS = 1_000_000
TELEPORT_WINDOW_SECONDS = 3600


class GPSIntegrityPolicy(BaseModel):
    """عتبات سياسة كشف التلاعب - كلها قابلة للتهيئة"""
    max_accuracy_meters: float = 500
    min_plausible_accuracy_meters: float = 1
    timestamp_window_seconds: float = 120
    rejection_threshold: int = 70
    require_accuracy: bool = False

    @classmethod
    def from_env(cls) -> "GPSIntegrityPolicy":
        defaults = cls()
        return cls(
            max_accuracy_meters=float(os.environ.get('GPS_MAX_ACCURACY_METERS', defaults.max_accuracy_meters)),
            min_plausible_accuracy_meters=float(os.environ.get(
                'GPS_MIN_PLAUSIBLE_ACCURACY_METERS', defaults.min_plausible_accuracy_meters
            )),
            timestamp_window_seconds=float(os.environ.get(
                'GPS_TIMESTAMP_WINDOW_SECONDS', defaults.timestamp_window_seconds
            )),
            rejection_threshold=int(os.environ.get('GPS_RISK_REJECTION_THRESHOLD', defaults.rejection_threshold)),
            require_accuracy=os.environ.get('GPS_REQUIRE_ACCURACY', 'false').lower() in ('1', 'true', 'yes'),
        )


class CheckOutcome(NamedTuple):
    triggered: bool
    weight: int
    issue: str
    recommendation: str


class IntegrityCheck(NamedTuple):
    name: str
    run: Callable[[GPSReading, datetime, GPSIntegrityPolicy], CheckOutcome]


# ============================================================
# الفحوصات
# ============================================================

RECOMMEND_ENABLE_GPS = "Please ensure GPS is enabled and working properly"
RECOMMEND_HIGH_ACCURACY = "Ask employee to enable high-accuracy location"
RECOMMEND_RETRY = "Retry check-in with a fresh location reading"
RECOMMEND_REAL_GPS = "Location appears to be manually set. Please use actual GPS location"
RECOMMEND_DISABLE_MOCK = "Disable any mock location or fake GPS application"
RECOMMEND_SYNC_CLOCK = "Check that the device date and time are set automatically"


def _invalid_latitude(reading, now, policy):
    lat = reading.latitude
    return CheckOutcome(
        lat is not None and not -90 <= lat <= 90,
        80, "Invalid latitude value", RECOMMEND_ENABLE_GPS
    )


def _invalid_longitude(reading, now, policy):
    lng = reading.longitude
    return CheckOutcome(
        lng is not None and not -180 <= lng <= 180,
        80, "Invalid longitude value", RECOMMEND_ENABLE_GPS
    )


def _null_island(reading, now, policy):
    return CheckOutcome(
        reading.latitude == 0 and reading.longitude == 0,
        80, "Implausible coordinates (0, 0) reported", RECOMMEND_DISABLE_MOCK
    )


def _accuracy_missing(reading, now, policy):
    return CheckOutcome(
        reading.accuracy is None,
        40 if policy.require_accuracy else 15,
        "GPS accuracy was not reported", RECOMMEND_HIGH_ACCURACY
    )


def _accuracy_non_positive(reading, now, policy):
    return CheckOutcome(
        reading.accuracy is not None and reading.accuracy <= 0,
        40, "GPS accuracy reported as zero or negative", RECOMMEND_DISABLE_MOCK
    )


def _accuracy_too_precise(reading, now, policy):
    acc = reading.accuracy
    return CheckOutcome(
        acc is not None and 0 < acc < policy.min_plausible_accuracy_meters,
        20, "Suspiciously high GPS accuracy",
        "GPS accuracy seems unusually high. Please verify location services"
    )


def _accuracy_too_coarse(reading, now, policy):
    acc = reading.accuracy
    return CheckOutcome(
        acc is not None and acc > policy.max_accuracy_meters,
        30, f"GPS accuracy is worse than {policy.max_accuracy_meters:g}m",
        RECOMMEND_HIGH_ACCURACY
    )


def _stale_timestamp(reading, now, policy):
    age = (now - reading.captured_at).total_seconds()
    return CheckOutcome(
        age > policy.timestamp_window_seconds,
        40, "GPS reading timestamp is stale", RECOMMEND_RETRY
    )


def _future_timestamp(reading, now, policy):
    skew = (reading.captured_at - now).total_seconds()
    return CheckOutcome(
        skew > policy.timestamp_window_seconds,
        40, "GPS reading timestamp is in the future", RECOMMEND_SYNC_CLOCK
    )


def _rounded_coordinates(reading, now, policy):
    if not reading.has_coordinates:
        return CheckOutcome(False, 20, "", "")
    lat, lng = reading.latitude, reading.longitude
    return CheckOutcome(
        round(lat, 3) == lat and round(lng, 3) == lng,
        20, "Coordinates appear to be manually entered", RECOMMEND_REAL_GPS
    )


INTEGRITY_CHECKS: List[IntegrityCheck] = [
    IntegrityCheck("invalid_latitude", _invalid_latitude),
    IntegrityCheck("invalid_longitude", _invalid_longitude),
    IntegrityCheck("null_island", _null_island),
    IntegrityCheck("accuracy_missing", _accuracy_missing),
    IntegrityCheck("accuracy_non_positive", _accuracy_non_positive),
    IntegrityCheck("accuracy_too_precise", _accuracy_too_precise),
    IntegrityCheck("accuracy_too_coarse", _accuracy_too_coarse),
    IntegrityCheck("stale_timestamp", _stale_timestamp),
    IntegrityCheck("future_timestamp", _future_timestamp),
    IntegrityCheck("rounded_coordinates", _rounded_coordinates),
]

# فحوصات تجعل حساب المسافة بلا معنى
IMPLAUSIBLE_COORDINATE_CHECKS = {"invalid_latitude", "invalid_longitude", "null_island"}


def _build_result(outcomes: List[tuple], threshold: int) -> GPSIntegrityResult:
    risk_score = 0
    issues = []
    recommendations = []
    triggered = []
    for name, outcome in outcomes:
        if not outcome.triggered:
            continue
        triggered.append(name)
        risk_score += outcome.weight
        issues.append(outcome.issue)
        if outcome.recommendation and outcome.recommendation not in recommendations:
            recommendations.append(outcome.recommendation)

    risk_score = min(risk_score, MAX_RISK_SCORE)
    return GPSIntegrityResult(
        is_valid=risk_score < threshold,
        risk_score=risk_score,
        issues=issues,
        recommendations=recommendations,
        triggered_checks=triggered,
    )


def validate_integrity(
    reading: GPSReading,
    now: datetime,
    policy: Optional[GPSIntegrityPolicy] = None
) -> GPSIntegrityResult:
    """
    تقييم القراءة - دالة نقية: نفس (reading, now, policy) = نفس النتيجة

    Args:
        reading: قراءة GPS من الجهاز
        now: الوقت الحالي (من الخادم)
        policy: العتبات - الافتراضي من متغيرات البيئة
    """
    policy = policy or GPSIntegrityPolicy.from_env()
    outcomes = [(check.name, check.run(reading, now, policy)) for check in INTEGRITY_CHECKS]
    return _build_result(outcomes, policy.rejection_threshold)


def has_implausible_coordinates(result: GPSIntegrityResult) -> bool:
    return bool(IMPLAUSIBLE_COORDINATE_CHECKS.intersection(result.triggered_checks))


# ============================================================
# فحص الاتساق - التنقل المستحيل بين قراءتين
# ============================================================

def validate_location_consistency(
    reading: GPSReading,
    previous_readings: List[GPSReading],
    policy: Optional[GPSIntegrityPolicy] = None
) -> GPSIntegrityResult:
    """مقارنة القراءة بآخر قراءة سابقة (الأحدث أولاً)"""
    policy = policy or GPSIntegrityPolicy.from_env()
    if not previous_readings or not reading.has_coordinates:
        return GPSIntegrityResult(is_valid=True, risk_score=0)

    last = previous_readings[0]
    triggered = False
    if last.has_coordinates:
        distance = haversine_distance(reading.latitude, reading.longitude, last.latitude, last.longitude)
        elapsed = abs((reading.captured_at - last.captured_at).total_seconds())
        triggered = distance > TELEPORT_DISTANCE_METERS and elapsed < TELEPORT_WINDOW_SECONDS

    outcome = CheckOutcome(
        triggered, 80, "Impossible location change detected (teleportation)",
        "Please verify your location is accurate"
    )
    return _build_result([("impossible_travel", outcome)], policy.rejection_threshold)


def combine_results(*results: GPSIntegrityResult) -> GPSIntegrityResult:
    """دمج عدة نتائج: أعلى درجة خطر، وكل المشاكل"""
    issues, recommendations, triggered = [], [], []
    for result in results:
        issues.extend(result.issues)
        triggered.extend(result.triggered_checks)
        for rec in result.recommendations:
            if rec not in recommendations:
                recommendations.append(rec)
    return GPSIntegrityResult(
        is_valid=all(r.is_valid for r in results),
        risk_score=max(r.risk_score for r in results),
        issues=issues,
        recommendations=recommendations,
        triggered_checks=triggered,
    )
