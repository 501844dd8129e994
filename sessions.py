"""Lecture session lifecycle.

A session starts ``active`` and ends ``completed`` or ``cancelled``. While
active it carries the teacher's live reference point, which is replaced only
by fixes newer than the one stored, and the running attendance counters.
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Dict, List, Optional

import config
from authorization import find_assignment
from database import create_document, get_document, get_documents, update_document
from errors import AuthorizationError, SessionClosed, SessionNotFound, StaleReference
from schemas import CampusBoundary, Division, GeoPoint, LectureSession, SessionStatus, now_ms

log = logging.getLogger(__name__)

SESSIONS = "lecturesession"

TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.CANCELLED)

# Per-session locks serialising submissions against one session
_LOCKS_GUARD = threading.Lock()
_SESSION_LOCKS: Dict[str, threading.Lock] = {}


@contextmanager
def session_lock(session_id: str):
    with _LOCKS_GUARD:
        lock = _SESSION_LOCKS.setdefault(session_id, threading.Lock())
    with lock:
        yield


def _forget_lock(session_id: str) -> None:
    with _LOCKS_GUARD:
        _SESSION_LOCKS.pop(session_id, None)


def default_campus_boundary() -> CampusBoundary:
    return CampusBoundary(
        latitude=config.CAMPUS_LATITUDE,
        longitude=config.CAMPUS_LONGITUDE,
        radius=config.CAMPUS_RADIUS_METERS,
    )


def _stamped(point: GeoPoint) -> GeoPoint:
    """Give ``point`` a usable ordering timestamp.

    Missing timestamps get server time. A timestamp from a device clock running
    far ahead would block every later fix, so it is pulled back to server time.
    """
    now = now_ms()
    if point.timestamp is None:
        return point.model_copy(update={"timestamp": now})
    if point.timestamp > now + config.MAX_FIX_CLOCK_SKEW_MS:
        log.warning("fix timestamp %s is %sms ahead of server time, clamping", point.timestamp, point.timestamp - now)
        return point.model_copy(update={"timestamp": now})
    return point


def start_session(
    teacher_id: str,
    semester: int,
    division: Division,
    subject_code: str,
    initial_location: GeoPoint,
    teacher_name: Optional[str] = None,
    geofence_radius: Optional[float] = None,
    campus_boundary: Optional[CampusBoundary] = None,
) -> LectureSession:
    assignment = find_assignment(teacher_id, semester, division, subject_code)
    if assignment is None:
        raise AuthorizationError(
            f"Teacher {teacher_id} is not assigned to semester {semester} "
            f"division {Division(division).value} subject {subject_code}"
        )

    now = now_ms()
    session = LectureSession(
        sessionId=f"sess_{uuid.uuid4().hex[:12]}",
        teacherId=teacher_id,
        teacherName=teacher_name,
        semester=semester,
        division=division,
        subjectCode=subject_code,
        subjectName=assignment.subjectName,
        status=SessionStatus.ACTIVE,
        startTime=now,
        endTime=None,
        teacherLocation=_stamped(initial_location),
        locationVersion=0,
        geofenceRadius=geofence_radius if geofence_radius is not None else config.TEACHER_PROXIMITY_RADIUS_METERS,
        campusBoundary=campus_boundary or default_campus_boundary(),
        createdAt=now,
        updatedAt=now,
    )
    create_document(SESSIONS, session)
    log.info("session %s started by %s for %s", session.sessionId, teacher_id, subject_code)
    return session


def get_session(session_id: str) -> LectureSession:
    doc = get_document(SESSIONS, {"sessionId": session_id})
    if not doc:
        raise SessionNotFound(f"Session {session_id} not found")
    return LectureSession.model_validate(doc)


def require_active(session_id: str) -> LectureSession:
    session = get_session(session_id)
    if not session.is_active:
        raise SessionClosed(f"Session {session_id} is {session.status.value}")
    return session


def update_session_location(session_id: str, point: GeoPoint) -> bool:
    """Replace the reference point if ``point`` is newer than the stored one.

    Returns False when the fix is discarded as out of order.
    """
    point = _stamped(point)
    doc = update_document(
        SESSIONS,
        {
            "sessionId": session_id,
            "status": SessionStatus.ACTIVE.value,
            "teacherLocation.timestamp": {"$lt": point.timestamp},
        },
        {
            "$set": {"teacherLocation": point.model_dump(mode="json"), "updatedAt": now_ms()},
            "$inc": {"locationVersion": 1},
        },
    )
    if doc is not None:
        return True

    # Nothing matched: find out which precondition failed.
    session = require_active(session_id)
    log.info(
        "session %s: discarded fix at %s, stored fix is at %s",
        session_id,
        point.timestamp,
        session.teacherLocation.timestamp,
    )
    return False


def end_session(session_id: str, outcome: SessionStatus = SessionStatus.COMPLETED) -> LectureSession:
    outcome = SessionStatus(outcome)
    if outcome not in TERMINAL_STATUSES:
        raise ValueError("outcome must be completed or cancelled")

    now = now_ms()
    doc = update_document(
        SESSIONS,
        {"sessionId": session_id, "status": SessionStatus.ACTIVE.value},
        {"$set": {"status": outcome.value, "endTime": now, "updatedAt": now}},
    )
    if doc is None:
        session = get_session(session_id)
        raise SessionClosed(f"Session {session_id} is already {session.status.value}")

    _forget_lock(session_id)
    log.info("session %s %s", session_id, outcome.value)
    return LectureSession.model_validate(doc)


def apply_counter_delta(session_id: str, total: int = 0, present: int = 0, absent: int = 0) -> None:
    inc = {k: v for k, v in (("totalStudents", total), ("presentCount", present), ("absentCount", absent)) if v}
    if not inc:
        return
    update_document(SESSIONS, {"sessionId": session_id}, {"$inc": inc, "$set": {"updatedAt": now_ms()}})


def ensure_reference_fresh(session: LectureSession, now: Optional[int] = None) -> None:
    max_age = config.REFERENCE_MAX_AGE_SECONDS
    if not max_age:
        return
    now = now if now is not None else now_ms()
    age_ms = now - (session.teacherLocation.timestamp or session.startTime)
    if age_ms > max_age * 1000:
        raise StaleReference(
            f"Teacher location is {age_ms // 1000}s old (limit {max_age}s). Ask the teacher to refresh their location."
        )


def get_active_session_for_teacher(teacher_id: str) -> Optional[LectureSession]:
    docs = get_documents(SESSIONS, {"teacherId": teacher_id, "status": SessionStatus.ACTIVE.value})
    if not docs:
        return None
    return max((LectureSession.model_validate(d) for d in docs), key=lambda s: s.startTime)


def has_active_session(teacher_id: str) -> bool:
    return get_active_session_for_teacher(teacher_id) is not None


def get_teacher_sessions(
    teacher_id: str,
    semester: Optional[int] = None,
    division: Optional[Division] = None,
    subject_code: Optional[str] = None,
    status: Optional[SessionStatus] = None,
    start_date: Optional[int] = None,
    end_date: Optional[int] = None,
) -> List[LectureSession]:
    query = {"teacherId": teacher_id}
    if semester is not None:
        query["semester"] = semester
    if division is not None:
        query["division"] = Division(division).value
    if subject_code:
        query["subjectCode"] = subject_code
    if status is not None:
        query["status"] = SessionStatus(status).value

    sessions = [LectureSession.model_validate(d) for d in get_documents(SESSIONS, query)]
    if start_date is not None:
        sessions = [s for s in sessions if s.startTime >= start_date]
    if end_date is not None:
        sessions = [s for s in sessions if s.startTime <= end_date]
    return sorted(sessions, key=lambda s: s.startTime, reverse=True)


def get_current_teacher_location(session_id: str) -> Optional[GeoPoint]:
    try:
        session = get_session(session_id)
    except SessionNotFound:
        return None
    return session.teacherLocation if session.is_active else None


def get_session_statistics(session_id: str) -> dict:
    session = get_session(session_id)
    end = session.endTime if session.endTime is not None else now_ms()
    percentage = (session.presentCount / session.totalStudents) * 100 if session.totalStudents else 0.0
    return {
        "totalStudents": session.totalStudents,
        "presentCount": session.presentCount,
        "absentCount": session.absentCount,
        "attendancePercentage": round(percentage, 1),
        "duration": (end - session.startTime) // 60000,
    }
