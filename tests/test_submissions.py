import threading

import pytest

import config
import sessions
from authorization import remove_class_assignment
from errors import AuthorizationError, SessionClosed, SessionNotFound, StaleReference
from schemas import AttendanceSubmission, GeoPoint, SubmissionStatus, now_ms
from submissions import get_session_records, get_student_record, mark_records_exported, submit_attendance

NEAR = (19.04341, 73.06181)  # ~1.5 m from the teacher
TWENTY_METERS = (19.04358, 73.0618)


def _submission(session_id, student_id="stu_1", point=NEAR, accuracy=8.0):
    return AttendanceSubmission(
        sessionId=session_id,
        studentId=student_id,
        studentName=f"Student {student_id}",
        rollNumber="42",
        location=GeoPoint(latitude=point[0], longitude=point[1], accuracy=accuracy, timestamp=now_ms()),
        deviceId="fp-abc",
    )


def _counters(session_id):
    s = sessions.get_session(session_id)
    return s.totalStudents, s.presentCount, s.absentCount


def test_submission_requires_accuracy():
    with pytest.raises(ValueError):
        AttendanceSubmission(
            sessionId="s",
            studentId="stu",
            studentName="x",
            location=GeoPoint(latitude=19.0, longitude=73.0),
        )


def test_student_next_to_teacher_is_marked(active_session):
    result = submit_attendance(_submission(active_session.sessionId))

    assert result.status == SubmissionStatus.MARKED
    assert result.accepted
    assert result.validation.isValid
    record = result.record
    assert record.marked and record.validationPassed
    assert record.distanceFromTeacher < 2
    assert record.subjectCode == "CS301"
    assert record.subjectName == "Operating Systems"
    assert record.teacherId == "tch_1"
    assert record.googleSheetExported is False
    assert _counters(active_session.sessionId) == (1, 1, 0)


def test_student_twenty_meters_away_is_rejected(active_session):
    result = submit_attendance(_submission(active_session.sessionId, point=TWENTY_METERS))

    assert result.status == SubmissionStatus.GEOFENCE_FAILED
    assert not result.validation.teacherProximityCheck
    assert result.validation.campusBoundaryCheck
    assert not result.validation.isValid
    assert "teacher" in result.reason and "campus" not in result.reason
    assert not result.record.marked
    assert not result.record.validationPassed
    assert result.record.distanceFromTeacher == pytest.approx(20.0, abs=0.2)
    assert _counters(active_session.sessionId) == (1, 0, 1)


def test_low_accuracy_is_rejected_before_geofence(active_session):
    result = submit_attendance(_submission(active_session.sessionId, accuracy=75))

    assert result.status == SubmissionStatus.LOW_ACCURACY
    assert result.validation is None
    assert "GPS accuracy too low" in result.reason
    assert result.record.validationPassed is False
    assert result.record.distanceFromTeacher is None
    assert _counters(active_session.sessionId) == (1, 0, 1)


def test_accuracy_threshold_is_configurable(active_session, monkeypatch):
    monkeypatch.setattr(config, "MAX_GPS_ACCURACY_METERS", 100.0)
    assert submit_attendance(_submission(active_session.sessionId, accuracy=75)).status == SubmissionStatus.MARKED


def test_second_submission_is_already_marked(active_session):
    sid = active_session.sessionId
    first = submit_attendance(_submission(sid))
    second = submit_attendance(_submission(sid))

    assert second.status == SubmissionStatus.ALREADY_MARKED
    assert second.record.recordId == first.record.recordId
    assert _counters(sid) == (1, 1, 0)
    assert len(get_session_records(sid)) == 1


def test_marked_student_never_gains_failure(active_session):
    sid = active_session.sessionId
    submit_attendance(_submission(sid))
    later = submit_attendance(_submission(sid, point=TWENTY_METERS))

    assert later.status == SubmissionStatus.ALREADY_MARKED
    assert _counters(sid) == (1, 1, 0)
    assert len(get_session_records(sid)) == 1


def test_repeated_failures_count_the_student_once(active_session):
    sid = active_session.sessionId
    for _ in range(3):
        submit_attendance(_submission(sid, point=TWENTY_METERS))

    assert _counters(sid) == (1, 0, 1)
    assert len(get_session_records(sid)) == 3


def test_failure_then_success_moves_student_to_present(active_session):
    sid = active_session.sessionId
    submit_attendance(_submission(sid, accuracy=90))
    submit_attendance(_submission(sid, point=TWENTY_METERS))
    assert _counters(sid) == (1, 0, 1)

    ok = submit_attendance(_submission(sid))
    assert ok.status == SubmissionStatus.MARKED
    assert _counters(sid) == (1, 1, 0)

    records = get_session_records(sid)
    assert [r.validationPassed for r in records] == [False, False, True]
    assert get_student_record(sid, "stu_1").recordId == ok.record.recordId


def test_geofence_uses_current_reference_point(active_session):
    sid = active_session.sessionId
    moved = GeoPoint(latitude=19.0440, longitude=73.0618, accuracy=3, timestamp=now_ms() + 1000)
    assert sessions.update_session_location(sid, moved)

    assert submit_attendance(_submission(sid, point=NEAR)).status == SubmissionStatus.GEOFENCE_FAILED
    assert submit_attendance(_submission(sid, "stu_2", point=(19.04401, 73.0618))).status == SubmissionStatus.MARKED


def test_unknown_session_mutates_nothing(store):
    with pytest.raises(SessionNotFound):
        submit_attendance(_submission("sess_missing"))
    assert store["attendancerecord"].count_documents({}) == 0


def test_closed_session_mutates_nothing(active_session, store):
    sid = active_session.sessionId
    sessions.end_session(sid)
    with pytest.raises(SessionClosed):
        submit_attendance(_submission(sid))
    assert store["attendancerecord"].count_documents({}) == 0
    assert _counters(sid) == (0, 0, 0)


def test_stale_reference_blocks_submissions(active_session, monkeypatch, store):
    monkeypatch.setattr(config, "REFERENCE_MAX_AGE_SECONDS", 30)
    store["lecturesession"].update_one(
        {"sessionId": active_session.sessionId},
        {"$set": {"teacherLocation.timestamp": now_ms() - 120 * 1000}},
    )
    with pytest.raises(StaleReference):
        submit_attendance(_submission(active_session.sessionId))
    assert store["attendancerecord"].count_documents({}) == 0


def test_revoked_assignment_blocks_when_revalidating(active_session, assignment, monkeypatch):
    remove_class_assignment(assignment.mappingId)
    assert submit_attendance(_submission(active_session.sessionId)).status == SubmissionStatus.MARKED

    monkeypatch.setattr(config, "REVALIDATE_ASSIGNMENT_ON_SUBMIT", True)
    with pytest.raises(AuthorizationError):
        submit_attendance(_submission(active_session.sessionId, "stu_2"))


def test_concurrent_submissions_do_not_lose_counts(active_session):
    sid = active_session.sessionId
    errors = []

    def worker(n):
        try:
            submit_attendance(_submission(sid, f"stu_{n}"))
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert _counters(sid) == (20, 20, 0)


def test_duplicate_race_yields_one_accepted_record(active_session):
    sid = active_session.sessionId
    results = []
    threads = [threading.Thread(target=lambda: results.append(submit_attendance(_submission(sid)))) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    statuses = sorted(r.status.value for r in results)
    assert statuses.count("marked") == 1
    assert statuses.count("already_marked") == 7
    assert _counters(sid) == (1, 1, 0)


def test_mark_records_exported(active_session):
    sid = active_session.sessionId
    submit_attendance(_submission(sid))
    submit_attendance(_submission(sid, "stu_2", accuracy=80))

    assert mark_records_exported(sid) == 2
    assert all(r.googleSheetExported for r in get_session_records(sid))
    assert mark_records_exported(sid) == 0
