import pytest

import config
import sessions
from errors import AuthorizationError, SessionClosed, SessionNotFound, StaleReference
from schemas import Division, GeoPoint, SessionStatus, now_ms


def _fix(lat, lon, ts):
    return GeoPoint(latitude=lat, longitude=lon, accuracy=4, timestamp=ts)


def test_start_requires_assignment():
    with pytest.raises(AuthorizationError):
        sessions.start_session("tch_1", 3, Division.A, "CS301", GeoPoint(latitude=19.0434, longitude=73.0618))


def test_start_rejects_other_division(assignment):
    with pytest.raises(AuthorizationError):
        sessions.start_session("tch_1", 3, Division.B, "CS301", GeoPoint(latitude=19.0434, longitude=73.0618))


def test_start_defaults(active_session):
    s = sessions.get_session(active_session.sessionId)
    assert s.status == SessionStatus.ACTIVE
    assert s.endTime is None
    assert s.subjectName == "Operating Systems"
    assert s.geofenceRadius == 15
    assert s.campusBoundary.radius == 500
    assert (s.totalStudents, s.presentCount, s.absentCount) == (0, 0, 0)
    assert s.teacherLocation.timestamp is not None


def test_start_stamps_location_without_timestamp(assignment):
    s = sessions.start_session("tch_1", 3, Division.A, "CS301", GeoPoint(latitude=19.0434, longitude=73.0618))
    assert s.teacherLocation.timestamp is not None


def test_start_keeps_explicit_radius(assignment):
    s = sessions.start_session(
        "tch_1", 3, Division.A, "CS301", GeoPoint(latitude=19.0434, longitude=73.0618), geofence_radius=30
    )
    assert s.geofenceRadius == 30


def test_start_rejects_zero_radius(assignment):
    with pytest.raises(ValueError):
        sessions.start_session(
            "tch_1", 3, Division.A, "CS301", GeoPoint(latitude=19.0434, longitude=73.0618), geofence_radius=0
        )


def test_future_fix_is_clamped_and_does_not_block_later_fixes(active_session):
    sid = active_session.sessionId
    assert sessions.update_session_location(sid, _fix(19.0436, 73.0618, now_ms() + 10**12))
    assert sessions.get_session(sid).teacherLocation.timestamp <= now_ms()

    assert sessions.update_session_location(sid, _fix(19.0437, 73.0618, now_ms() + 1000))
    s = sessions.get_session(sid)
    assert s.teacherLocation.latitude == 19.0437
    assert s.locationVersion == 2


def test_update_location_while_active(active_session):
    ts = active_session.teacherLocation.timestamp + 1000
    assert sessions.update_session_location(active_session.sessionId, _fix(19.0435, 73.0619, ts))

    s = sessions.get_session(active_session.sessionId)
    assert s.teacherLocation.latitude == 19.0435
    assert s.teacherLocation.timestamp == ts
    assert s.locationVersion == 1


def test_out_of_order_fix_is_discarded(active_session):
    base = active_session.teacherLocation.timestamp
    sid = active_session.sessionId
    assert sessions.update_session_location(sid, _fix(19.0436, 73.0618, base + 2000))
    assert not sessions.update_session_location(sid, _fix(19.0500, 73.0618, base + 1000))
    assert not sessions.update_session_location(sid, _fix(19.0500, 73.0618, base + 2000))

    s = sessions.get_session(sid)
    assert s.teacherLocation.latitude == 19.0436
    assert s.locationVersion == 1


def test_update_after_end_is_rejected(active_session):
    sid = active_session.sessionId
    sessions.end_session(sid, SessionStatus.COMPLETED)
    with pytest.raises(SessionClosed):
        sessions.update_session_location(sid, _fix(19.0435, 73.0619, now_ms() + 5000))


def test_update_unknown_session():
    with pytest.raises(SessionNotFound):
        sessions.update_session_location("sess_missing", _fix(19.0, 73.0, now_ms()))


def test_end_sets_end_time(active_session):
    ended = sessions.end_session(active_session.sessionId, SessionStatus.CANCELLED)
    assert ended.status == SessionStatus.CANCELLED
    assert ended.endTime is not None
    assert not ended.is_active


def test_end_twice_is_an_error(active_session):
    sessions.end_session(active_session.sessionId)
    with pytest.raises(SessionClosed):
        sessions.end_session(active_session.sessionId, SessionStatus.CANCELLED)
    assert sessions.get_session(active_session.sessionId).status == SessionStatus.COMPLETED


def test_end_requires_terminal_outcome(active_session):
    with pytest.raises(ValueError):
        sessions.end_session(active_session.sessionId, SessionStatus.ACTIVE)


def test_end_unknown_session():
    with pytest.raises(SessionNotFound):
        sessions.end_session("sess_missing")


def test_active_session_queries(active_session):
    assert sessions.has_active_session("tch_1")
    assert sessions.get_active_session_for_teacher("tch_1").sessionId == active_session.sessionId
    assert sessions.get_current_teacher_location(active_session.sessionId).latitude == 19.0434

    sessions.end_session(active_session.sessionId)
    assert not sessions.has_active_session("tch_1")
    assert sessions.get_current_teacher_location(active_session.sessionId) is None
    assert sessions.get_current_teacher_location("sess_missing") is None


def test_teacher_sessions_filters(active_session):
    sessions.end_session(active_session.sessionId)
    second = sessions.start_session("tch_1", 3, Division.A, "CS301", GeoPoint(latitude=19.0434, longitude=73.0618))

    everything = sessions.get_teacher_sessions("tch_1")
    assert {s.sessionId for s in everything} == {active_session.sessionId, second.sessionId}
    assert everything[0].startTime >= everything[1].startTime

    completed = sessions.get_teacher_sessions("tch_1", status=SessionStatus.COMPLETED)
    assert [s.sessionId for s in completed] == [active_session.sessionId]
    assert sessions.get_teacher_sessions("tch_1", division=Division.B) == []
    assert sessions.get_teacher_sessions("tch_1", start_date=now_ms() + 60000) == []


def test_counter_delta_and_statistics(active_session):
    sid = active_session.sessionId
    sessions.apply_counter_delta(sid, total=4, present=3, absent=1)
    stats = sessions.get_session_statistics(sid)
    assert stats["totalStudents"] == 4
    assert stats["presentCount"] == 3
    assert stats["absentCount"] == 1
    assert stats["attendancePercentage"] == 75.0
    assert stats["duration"] == 0


def test_statistics_empty_session(active_session):
    assert sessions.get_session_statistics(active_session.sessionId)["attendancePercentage"] == 0.0


def test_reference_staleness_bound(active_session, monkeypatch):
    stamp = active_session.teacherLocation.timestamp
    # disabled by default
    sessions.ensure_reference_fresh(active_session, now=stamp + 3600 * 1000)

    monkeypatch.setattr(config, "REFERENCE_MAX_AGE_SECONDS", 60)
    sessions.ensure_reference_fresh(active_session, now=stamp + 60 * 1000)
    with pytest.raises(StaleReference):
        sessions.ensure_reference_fresh(active_session, now=stamp + 61 * 1000)
