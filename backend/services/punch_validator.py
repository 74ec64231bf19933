"""
Punch Validator Service - التحقق من موقع البصمة
============================================================
يتحقق من:
1. المسافة بين قراءة GPS وكل موقع عمل معيّن للموظف (Haversine)
2. اختيار أقرب موقع
3. هل القراءة داخل دائرة الموقع (radius_meters)

القواعد:
- بدون إحداثيات = مرفوض بدون أي حساب مسافة
- بدون مواقع معيّنة = مرفوض (حالة مختلفة عن "خارج النطاق")
- النقطة على حافة الدائرة تماماً مقبولة
"""
from typing import List
import math

from models.attendance import (
    GPSReading,
    WorkLocation,
    GeofenceCode,
    GeofenceValidationResult,
)

# نصف قطر الأرض بالكيلومتر
EARTH_RADIUS_KM = 6371


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """حساب المسافة بالمتر بين نقطتين"""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = math.sin(delta_lat/2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS_KM * c * 1000


def validate_geofence(reading: GPSReading, locations: List[WorkLocation]) -> GeofenceValidationResult:
    """
    التحقق من أن القراءة داخل دائرة أقرب موقع عمل

    Returns:
        GeofenceValidationResult - code يميز بين:
        verified / outside_radius / no_work_location / no_location_provided
    """
    if not reading.has_coordinates:
        return GeofenceValidationResult(
            is_valid=False,
            code=GeofenceCode.NO_LOCATION_PROVIDED,
            message="No location provided",
        )

    if not locations:
        return GeofenceValidationResult(
            is_valid=False,
            code=GeofenceCode.NO_WORK_LOCATION,
            message="No work locations assigned to this employee. Please contact administrator.",
        )

    # أقرب موقع - عند التساوي التام يبقى الأول
    nearest = None
    shortest = float('inf')
    for location in locations:
        distance = haversine_distance(
            reading.latitude, reading.longitude,
            location.latitude, location.longitude
        )
        if distance < shortest:
            shortest = distance
            nearest = location

    is_valid = shortest <= nearest.radius_meters
    shown = round(shortest)

    if is_valid:
        message = f"Location verified! You are {shown}m from {nearest.name}."
    else:
        message = f"You are {shown}m from {nearest.name}. Must be within {nearest.radius_meters:g}m."

    return GeofenceValidationResult(
        is_valid=is_valid,
        code=GeofenceCode.VERIFIED if is_valid else GeofenceCode.OUTSIDE_RADIUS,
        distance_meters=round(shortest, 2),
        nearest_location=nearest,
        message=message,
    )


def geofence_not_evaluated(reason: str) -> GeofenceValidationResult:
    """نتيجة بدون حساب مسافة - عندما تكون القراءة نفسها غير موثوقة"""
    return GeofenceValidationResult(
        is_valid=False,
        code=GeofenceCode.NOT_EVALUATED,
        message=reason,
    )
