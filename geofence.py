"""Dual geofence validation.

A student location is accepted only when it is both within a small radius of
the teacher's live position and within the campus boundary. Everything here is
a pure function of its arguments.
"""
from math import radians, sin, cos, sqrt, atan2
from typing import NamedTuple, Optional

from schemas import GeoPoint, GeofenceValidationResult

EARTH_RADIUS_M = 6371000.0
DEFAULT_MAX_ACCURACY_M = 50.0


class GeofenceCheck(NamedTuple):
    passed: bool
    distance: float


class AccuracyCheck(NamedTuple):
    passed: bool
    reason: Optional[str] = None


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    dLat = radians(lat2 - lat1)
    dLon = radians(lon2 - lon1)
    a = sin(dLat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dLon / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance_meters(a: GeoPoint, b: GeoPoint) -> float:
    return haversine(a.latitude, a.longitude, b.latitude, b.longitude)


def check_proximity(student: GeoPoint, reference: GeoPoint, radius_meters: float) -> GeofenceCheck:
    distance = distance_meters(student, reference)
    return GeofenceCheck(distance <= radius_meters, distance)


def check_boundary(student: GeoPoint, campus_center: GeoPoint, campus_radius: float) -> GeofenceCheck:
    distance = distance_meters(student, campus_center)
    return GeofenceCheck(distance <= campus_radius, distance)


def check_dual(
    student: GeoPoint,
    teacher_ref: GeoPoint,
    teacher_radius: float,
    campus_center: GeoPoint,
    campus_radius: float,
) -> GeofenceValidationResult:
    teacher = check_proximity(student, teacher_ref, teacher_radius)
    campus = check_boundary(student, campus_center, campus_radius)

    message = None
    if not teacher.passed and not campus.passed:
        message = (
            f"You are {teacher.distance:.1f}m away from teacher (required: within {teacher_radius:g}m) "
            f"and {campus.distance:.1f}m away from campus center (required: within {campus_radius:g}m)."
        )
    elif not teacher.passed:
        message = (
            f"You are {teacher.distance:.1f}m away from teacher. "
            f"You must be within {teacher_radius:g}m to mark attendance."
        )
    elif not campus.passed:
        message = (
            f"You are {campus.distance:.1f}m away from campus center. "
            f"You must be within campus boundary ({campus_radius:g}m radius)."
        )

    return GeofenceValidationResult(
        isValid=teacher.passed and campus.passed,
        teacherProximityCheck=teacher.passed,
        campusBoundaryCheck=campus.passed,
        distanceFromTeacher=teacher.distance,
        distanceFromCampus=campus.distance,
        errorMessage=message,
    )


def check_accuracy(accuracy_meters: float, max_acceptable: float = DEFAULT_MAX_ACCURACY_M) -> AccuracyCheck:
    if accuracy_meters > max_acceptable:
        return AccuracyCheck(
            False,
            f"GPS accuracy too low ({accuracy_meters:.0f}m). "
            "Please move to an open area with clear sky view and try again.",
        )
    return AccuracyCheck(True)


def format_distance(meters: float) -> str:
    if meters < 1:
        return f"{round(meters * 100)} cm"
    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.2f} km"
