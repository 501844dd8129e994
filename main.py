import logging
import os
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import anyio
from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from jose import JWTError, jwt

import socketio

import config
import database
from authorization import (
    add_class_assignment,
    create_class_assignments,
    create_teacher,
    get_teacher,
    get_teacher_assignments,
    remove_class_assignment,
)
from errors import AttendanceError, SensorUnavailable, SessionClosed, SessionNotFound
from location_tracker import LocationTracker, QueueLocationSource, TrackerHandle, TrackerOptions
from schemas import (
    AttendanceSubmission,
    ClassAssignmentInput,
    Division,
    GeoPoint,
    SessionStatus,
    SubmissionStatus,
)
from sessions import (
    end_session,
    get_session,
    get_session_statistics,
    start_session,
    update_session_location,
)
from submissions import get_session_records, mark_records_exported, submit_attendance

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger(__name__)

# Socket.IO
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=config.CORS_ALLOW_ORIGINS)
sio_app = socketio.ASGIApp(sio, socketio_path="/socket.io")

# FastAPI app
app = FastAPI(title="Dual Geofence Attendance API")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount Socket.IO under /ws
app.mount("/ws", sio_app)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": type(exc).__name__})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ----------------------
# Utility functions
# ----------------------

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def ms_to_iso(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return to_iso(datetime.fromtimestamp(ms / 1000, tz=timezone.utc))


def emit_from_thread(event: str, data: Dict[str, Any], room: str) -> None:
    """Push a realtime event from a sync route running in the threadpool."""
    try:
        anyio.from_thread.run(sio.emit, event, data, room)
    except RuntimeError as exc:
        # No event loop to hand off to (e.g. called outside a request).
        log.debug("realtime emit %s skipped: %s", event, exc)


def teacher_room(session_id: str) -> str:
    return f"session:{session_id}:teacher"


def students_room(session_id: str) -> str:
    return f"session:{session_id}:students"


# ----------------------
# Auth
# ----------------------
class AuthedUser(BaseModel):
    userId: str
    name: Optional[str] = None
    role: str  # 'teacher' | 'student'


def decode_jwt(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except JWTError as e:
        raise HTTPException(status_code=401, detail="Invalid token") from e


def get_current_user(request: Request) -> AuthedUser:
    auth = request.headers.get("Authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return user_from_token(auth.split(" ", 1)[1].strip())


def user_from_token(token: str) -> AuthedUser:
    data = decode_jwt(token)
    user_id = data.get("userId") or data.get("sub")
    role = data.get("role")
    name = data.get("name")
    if not user_id or not role:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return AuthedUser(userId=user_id, role=role, name=name)


def require_teacher(user: AuthedUser, teacher_id: str) -> None:
    if user.role != "teacher" or user.userId != teacher_id:
        raise HTTPException(status_code=403, detail="Only the teacher can do this")


# Mock login for demo/testing
class MockLoginBody(BaseModel):
    userId: str
    role: str
    name: Optional[str] = None
    expMinutes: int = 120


@app.post("/api/auth/mock-login")
def mock_login(body: MockLoginBody):
    exp = now_utc() + timedelta(minutes=body.expMinutes)
    payload = {"sub": body.userId, "userId": body.userId, "role": body.role, "name": body.name, "exp": int(exp.timestamp())}
    token = jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)
    return {"token": token, "expiresAt": to_iso(exp)}


# ----------------------
# Teachers & class assignments
# ----------------------
class RegisterTeacherBody(BaseModel):
    name: str
    email: Optional[str] = None
    department: Optional[str] = None
    designation: Optional[str] = None
    classAssignments: List[ClassAssignmentInput] = Field(default_factory=list)


@app.post("/api/teachers")
def register_teacher(body: RegisterTeacherBody, user: AuthedUser = Depends(get_current_user)):
    if user.role != "teacher":
        raise HTTPException(status_code=403, detail="Only teachers can register")
    if get_teacher(user.userId):
        raise HTTPException(status_code=409, detail="Teacher already registered")

    teacher = create_teacher(
        name=body.name,
        email=body.email,
        department=body.department,
        designation=body.designation,
        teacher_id=user.userId,
    )
    mappings = create_class_assignments(teacher.teacherId, body.classAssignments)
    return {
        "teacher": teacher.model_dump(mode="json"),
        "classAssignments": [m.model_dump(mode="json") for m in mappings],
    }


@app.get("/api/teachers/{teacherId}/classes")
def list_classes(teacherId: str, includeInactive: bool = False, user: AuthedUser = Depends(get_current_user)):
    require_teacher(user, teacherId)
    mappings = get_teacher_assignments(teacherId, include_inactive=includeInactive)
    return [m.model_dump(mode="json") for m in mappings]


@app.post("/api/teachers/{teacherId}/classes")
def add_class(teacherId: str, body: ClassAssignmentInput, user: AuthedUser = Depends(get_current_user)):
    require_teacher(user, teacherId)
    mapping = add_class_assignment(teacherId, body.semester, body.division, body.subjectCode, body.subjectName)
    return mapping.model_dump(mode="json")


@app.delete("/api/teachers/{teacherId}/classes/{mappingId}")
def remove_class(teacherId: str, mappingId: str, user: AuthedUser = Depends(get_current_user)):
    require_teacher(user, teacherId)
    owned = {m.mappingId for m in get_teacher_assignments(teacherId, include_inactive=True)}
    if mappingId not in owned or not remove_class_assignment(mappingId):
        raise HTTPException(status_code=404, detail="Class assignment not found")
    return {"ok": True}


# ----------------------
# Session APIs
# ----------------------
class StartSessionBody(BaseModel):
    teacherId: str
    semester: int
    division: Division
    subjectCode: str
    lat: float
    lon: float
    accuracy: Optional[float] = None
    timestamp: Optional[int] = None
    teacherName: Optional[str] = None


@app.post("/api/session/start")
def start_lecture(body: StartSessionBody, user: AuthedUser = Depends(get_current_user)):
    require_teacher(user, body.teacherId)

    session = start_session(
        teacher_id=body.teacherId,
        semester=body.semester,
        division=body.division,
        subject_code=body.subjectCode,
        # Device clock, so later fixes from the same device order against it
        initial_location=GeoPoint(latitude=body.lat, longitude=body.lon, accuracy=body.accuracy, timestamp=body.timestamp),
        teacher_name=body.teacherName or user.name,
    )
    return {
        "sessionId": session.sessionId,
        "startsAt": ms_to_iso(session.startTime),
        "subjectName": session.subjectName,
        "geofenceRadius": session.geofenceRadius,
        "campusBoundary": session.campusBoundary.model_dump(),
        "teacherLocation": {"lat": body.lat, "lon": body.lon},
    }


class LocationBody(BaseModel):
    lat: float
    lon: float
    accuracy: Optional[float] = None
    timestamp: Optional[int] = None


@app.post("/api/session/{sessionId}/location")
def post_teacher_location(sessionId: str, body: LocationBody, user: AuthedUser = Depends(get_current_user)):
    sess = get_session(sessionId)
    require_teacher(user, sess.teacherId)

    point = GeoPoint(latitude=body.lat, longitude=body.lon, accuracy=body.accuracy, timestamp=body.timestamp)
    applied = update_session_location(sessionId, point)
    return {"applied": applied}


class EndSessionBody(BaseModel):
    outcome: SessionStatus = SessionStatus.COMPLETED


@app.post("/api/session/{sessionId}/end")
def end_lecture(sessionId: str, body: EndSessionBody, user: AuthedUser = Depends(get_current_user)):
    sess = get_session(sessionId)
    require_teacher(user, sess.teacherId)

    ended = end_session(sessionId, body.outcome)
    emit_from_thread("session:ended", {"sessionId": sessionId, "status": ended.status.value}, students_room(sessionId))
    return {
        "sessionId": sessionId,
        "status": ended.status.value,
        "endsAt": ms_to_iso(ended.endTime),
        "statistics": get_session_statistics(sessionId),
    }


@app.get("/api/session/{sessionId}")
def session_detail(sessionId: str, user: AuthedUser = Depends(get_current_user)):
    sess = get_session(sessionId)
    data = sess.model_dump(mode="json")
    if user.role != "teacher":
        # Students do not need the live teacher position.
        data.pop("teacherLocation", None)
    return data


@app.get("/api/session/{sessionId}/statistics")
def session_statistics(sessionId: str, user: AuthedUser = Depends(get_current_user)):
    return get_session_statistics(sessionId)


# ----------------------
# Attendance submission
# ----------------------
class AttendanceBody(BaseModel):
    studentName: str
    studentEmail: Optional[str] = None
    rollNumber: Optional[str] = None
    lat: float
    lon: float
    accuracy: float
    timestamp: Optional[int] = None
    deviceId: Optional[str] = None


@app.post("/api/session/{sessionId}/attendance")
def post_attendance(sessionId: str, body: AttendanceBody, request: Request, user: AuthedUser = Depends(get_current_user)):
    if user.role != "student":
        raise HTTPException(status_code=403, detail="Only students can mark attendance")

    submission = AttendanceSubmission(
        sessionId=sessionId,
        studentId=user.userId,
        studentName=body.studentName,
        studentEmail=body.studentEmail,
        rollNumber=body.rollNumber,
        location=GeoPoint(latitude=body.lat, longitude=body.lon, accuracy=body.accuracy, timestamp=body.timestamp),
        deviceId=body.deviceId,
        userAgent=request.headers.get("User-Agent"),
    )
    result = submit_attendance(submission)

    event = "attendance:marked" if result.status == SubmissionStatus.MARKED else "attendance:rejected"
    if result.status != SubmissionStatus.ALREADY_MARKED:
        emit_from_thread(
            event,
            {
                "sessionId": sessionId,
                "userId": user.userId,
                "recordId": result.record.recordId,
                "status": result.status.value,
                "distance": round(result.record.distanceFromTeacher, 2) if result.record.distanceFromTeacher is not None else None,
            },
            teacher_room(sessionId),
        )

    return {
        "status": result.status.value,
        "marked": result.accepted,
        "reason": result.reason,
        "record": result.record.model_dump(mode="json"),
        "validation": result.validation.model_dump() if result.validation else None,
    }


# ----------------------
# Teacher view
# ----------------------

@app.get("/api/session/{sessionId}/teacher-view")
def teacher_view(sessionId: str, user: AuthedUser = Depends(get_current_user)):
    sess = get_session(sessionId)
    require_teacher(user, sess.teacherId)

    students: Dict[str, Dict[str, Any]] = {}
    for rec in get_session_records(sessionId):
        entry = students.setdefault(
            rec.studentId, {"userId": rec.studentId, "name": rec.studentName, "status": "absent", "attempts": 0}
        )
        entry["attempts"] += 1
        if entry["status"] == "present":
            continue
        entry.update(
            status="present" if rec.validationPassed else "absent",
            distance=round(rec.distanceFromTeacher, 2) if rec.distanceFromTeacher is not None else None,
            lastSeen=ms_to_iso(rec.markedAt),
            reason=rec.failureReason,
        )

    return {
        "session": {
            "sessionId": sess.sessionId,
            "teacherId": sess.teacherId,
            "teacherName": sess.teacherName,
            "subjectCode": sess.subjectCode,
            "subjectName": sess.subjectName,
            "status": sess.status.value,
            "startsAt": ms_to_iso(sess.startTime),
            "endsAt": ms_to_iso(sess.endTime),
        },
        "statistics": get_session_statistics(sessionId),
        "students": list(students.values()),
    }


@app.post("/api/session/{sessionId}/exported")
def mark_exported(sessionId: str, user: AuthedUser = Depends(get_current_user)):
    sess = get_session(sessionId)
    require_teacher(user, sess.teacherId)
    return {"updated": mark_records_exported(sessionId)}


# ----------------------
# Live teacher location
# ----------------------
@dataclass
class _Tracking:
    teacher_id: str
    tracker: LocationTracker
    source: QueueLocationSource
    handle: TrackerHandle


_TRACKERS: Dict[str, _Tracking] = {}


def _stop_tracking(session_id: str) -> None:
    entry = _TRACKERS.pop(session_id, None)
    if entry:
        entry.tracker.stop(entry.handle)


def _start_tracking(session_id: str, teacher_id: str) -> None:
    entry = _TRACKERS.get(session_id)
    if entry and entry.handle.active:
        return

    source = QueueLocationSource()
    tracker = LocationTracker(source)

    async def on_fix(point: GeoPoint):
        try:
            await anyio.to_thread.run_sync(update_session_location, session_id, point)
        except (SessionClosed, SessionNotFound) as exc:
            log.info("session %s: stopping location stream: %s", session_id, exc.message)
            _stop_tracking(session_id)

    async def on_error(exc: SensorUnavailable):
        _TRACKERS.pop(session_id, None)
        await sio.emit("location:error", {"sessionId": session_id, "message": exc.message}, to=teacher_room(session_id))

    handle = tracker.start(on_fix, on_error, TrackerOptions.from_config())
    _TRACKERS[session_id] = _Tracking(teacher_id, tracker, source, handle)


async def _socket_user(sid) -> Optional[AuthedUser]:
    return (await sio.get_session(sid)).get("user")


async def _session_teacher(sid, session_id) -> Optional[AuthedUser]:
    """The connected user, if they are the teacher running ``session_id``."""
    user = await _socket_user(sid)
    if user is None or user.role != "teacher" or not session_id:
        return None
    try:
        sess = await anyio.to_thread.run_sync(get_session, session_id)
    except SessionNotFound:
        return None
    return user if sess.teacherId == user.userId else None


@sio.event
async def connect(sid, environ, auth):
    token = (auth or {}).get("token")
    if not token:
        raise socketio.exceptions.ConnectionRefusedError("Missing token")
    try:
        user = user_from_token(token)
    except HTTPException as e:
        raise socketio.exceptions.ConnectionRefusedError(e.detail) from e
    await sio.save_session(sid, {"user": user})


@sio.event
async def join_teacher(sid, data):
    session_id = data.get("sessionId")
    user = await _session_teacher(sid, session_id)
    if user is None:
        log.warning("socket %s refused as teacher of %s", sid, session_id)
        return {"ok": False, "reason": "forbidden"}
    await sio.enter_room(sid, teacher_room(session_id))
    _start_tracking(session_id, user.userId)
    return {"ok": True}


@sio.event
async def join_student(sid, data):
    session_id = data.get("sessionId")
    if await _socket_user(sid) is None:
        return {"ok": False, "reason": "forbidden"}
    await sio.enter_room(sid, students_room(session_id))
    return {"ok": True}


def _tracking_for(user: Optional[AuthedUser], session_id) -> Optional[_Tracking]:
    entry = _TRACKERS.get(session_id)
    if entry is None or user is None or user.role != "teacher" or user.userId != entry.teacher_id:
        return None
    return entry


@sio.event
async def teacher_location(sid, data):
    session_id = data.get("sessionId")
    user = await _socket_user(sid)
    entry = _tracking_for(user, session_id)
    if entry is None:
        return {"ok": False, "reason": "forbidden" if session_id in _TRACKERS else "not_tracking"}
    point = GeoPoint(
        latitude=data["latitude"],
        longitude=data["longitude"],
        accuracy=data.get("accuracy"),
        timestamp=data.get("timestamp"),
    )
    entry.source.push(point)
    return {"ok": True}


@sio.event
async def teacher_location_error(sid, data):
    entry = _tracking_for(await _socket_user(sid), data.get("sessionId"))
    if entry is None:
        return {"ok": False, "reason": "forbidden"}
    entry.source.fail(data.get("message") or "Location unavailable")
    return {"ok": True}


# ----------------------
# Health and database test
# ----------------------
@app.get("/")
def read_root():
    return {"message": "Attendance backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": [],
    }

    if database.db is not None:
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# ----------------------
# Uvicorn
# ----------------------
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
