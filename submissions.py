"""Student attendance submissions.

Every submission that gets past the session checks leaves exactly one
attendance record behind, accepted or not, so a rejected claim is still
auditable. Counters on the session track distinct students, not attempts: a
student counts once in ``totalStudents`` and sits in either ``presentCount``
or ``absentCount``. Repeated failures add records but leave the counters
alone, and a success after failures moves the student from absent to present,
so ``presentCount + absentCount == totalStudents`` always holds.
"""
import logging
import uuid
from typing import List, Optional

import config
import sessions
from authorization import can_teach
from database import create_document, get_document, get_documents, update_documents
from errors import AuthorizationError
from geofence import check_accuracy, check_dual
from schemas import (
    AttendanceRecord,
    AttendanceSubmission,
    GeofenceValidationResult,
    LectureSession,
    SubmissionResult,
    SubmissionStatus,
    now_ms,
)

log = logging.getLogger(__name__)

RECORDS = "attendancerecord"


def _build_record(
    session: LectureSession,
    submission: AttendanceSubmission,
    passed: bool,
    validation: Optional[GeofenceValidationResult],
    failure_reason: Optional[str],
) -> AttendanceRecord:
    now = now_ms()
    return AttendanceRecord(
        recordId=f"att_{uuid.uuid4().hex[:10]}",
        sessionId=session.sessionId,
        studentId=submission.studentId,
        studentName=submission.studentName,
        rollNumber=submission.rollNumber,
        semester=session.semester,
        division=session.division,
        subjectCode=session.subjectCode,
        subjectName=session.subjectName,
        teacherId=session.teacherId,
        teacherName=session.teacherName,
        marked=passed,
        markedAt=now,
        location=submission.location,
        distanceFromTeacher=validation.distanceFromTeacher if validation else None,
        distanceFromCampus=validation.distanceFromCampus if validation else None,
        validationPassed=passed,
        failureReason=failure_reason,
        deviceId=submission.deviceId,
        googleSheetExported=False,
        createdAt=now,
    )


def get_session_records(session_id: str) -> List[AttendanceRecord]:
    docs = get_documents(RECORDS, {"sessionId": session_id})
    return sorted((AttendanceRecord.model_validate(d) for d in docs), key=lambda r: r.createdAt)


def get_student_record(session_id: str, student_id: str) -> Optional[AttendanceRecord]:
    """The accepted record for a student in a session, if any."""
    doc = get_document(RECORDS, {"sessionId": session_id, "studentId": student_id, "validationPassed": True})
    return AttendanceRecord.model_validate(doc) if doc else None


def _has_any_record(session_id: str, student_id: str) -> bool:
    return get_document(RECORDS, {"sessionId": session_id, "studentId": student_id}) is not None


def _check_session(session_id: str) -> LectureSession:
    session = sessions.require_active(session_id)
    sessions.ensure_reference_fresh(session)
    if config.REVALIDATE_ASSIGNMENT_ON_SUBMIT and not can_teach(
        session.teacherId, session.semester, session.division, session.subjectCode
    ):
        raise AuthorizationError(f"Teacher {session.teacherId} no longer holds this class assignment")
    return session


def _reject(
    session: LectureSession,
    submission: AttendanceSubmission,
    status: SubmissionStatus,
    reason: str,
    validation: Optional[GeofenceValidationResult] = None,
) -> SubmissionResult:
    accepted = get_student_record(session.sessionId, submission.studentId)
    if accepted is not None:
        # Already present; a later bad fix does not undo that.
        return SubmissionResult(status=SubmissionStatus.ALREADY_MARKED, record=accepted, validation=validation)

    first_attempt = not _has_any_record(session.sessionId, submission.studentId)
    record = _build_record(session, submission, False, validation, reason)
    create_document(RECORDS, record)
    if first_attempt:
        sessions.apply_counter_delta(session.sessionId, total=1, absent=1)

    log.info(
        "session %s: student %s rejected (%s): %s",
        session.sessionId,
        submission.studentId,
        status.value,
        reason,
    )
    return SubmissionResult(status=status, record=record, validation=validation, reason=reason)


def _accept(
    session: LectureSession, submission: AttendanceSubmission, validation: GeofenceValidationResult
) -> SubmissionResult:
    accepted = get_student_record(session.sessionId, submission.studentId)
    if accepted is not None:
        log.info("session %s: student %s already marked", session.sessionId, submission.studentId)
        return SubmissionResult(status=SubmissionStatus.ALREADY_MARKED, record=accepted, validation=validation)

    failed_before = _has_any_record(session.sessionId, submission.studentId)
    record = _build_record(session, submission, True, validation, None)
    create_document(RECORDS, record)
    if failed_before:
        sessions.apply_counter_delta(session.sessionId, present=1, absent=-1)
    else:
        sessions.apply_counter_delta(session.sessionId, total=1, present=1)

    log.info(
        "session %s: student %s marked present (%.1fm from teacher)",
        session.sessionId,
        submission.studentId,
        validation.distanceFromTeacher,
    )
    return SubmissionResult(status=SubmissionStatus.MARKED, record=record, validation=validation)


def submit_attendance(submission: AttendanceSubmission) -> SubmissionResult:
    """Validate a student's presence claim and record the outcome.

    Raises SessionNotFound, SessionClosed, StaleReference or AuthorizationError
    before touching anything. Otherwise returns a SubmissionResult whose status
    says whether the student was marked, rejected, or had already been marked.
    """
    with sessions.session_lock(submission.sessionId):
        session = _check_session(submission.sessionId)

        accuracy = check_accuracy(submission.location.accuracy, config.MAX_GPS_ACCURACY_METERS)
        if not accuracy.passed:
            return _reject(session, submission, SubmissionStatus.LOW_ACCURACY, accuracy.reason)

        validation = check_dual(
            submission.location,
            session.teacherLocation,
            session.geofenceRadius,
            session.campusBoundary.center,
            session.campusBoundary.radius,
        )
        if not validation.isValid:
            return _reject(
                session, submission, SubmissionStatus.GEOFENCE_FAILED, validation.errorMessage, validation
            )

        return _accept(session, submission, validation)


def mark_records_exported(session_id: str) -> int:
    return update_documents(
        RECORDS,
        {"sessionId": session_id, "googleSheetExported": False},
        {"$set": {"googleSheetExported": True}},
    )
