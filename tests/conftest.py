import mongomock
import pytest

import config
import database
import sessions
from authorization import add_class_assignment
from schemas import Division, GeoPoint, now_ms

TEACHER_POINT = (19.0434, 73.0618)


@pytest.fixture(autouse=True)
def store(monkeypatch):
    # In-memory Mongo for isolation.
    test_db = mongomock.MongoClient()["attendance_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(config, "CAMPUS_LATITUDE", TEACHER_POINT[0])
    monkeypatch.setattr(config, "CAMPUS_LONGITUDE", TEACHER_POINT[1])
    monkeypatch.setattr(config, "CAMPUS_RADIUS_METERS", 500.0)
    monkeypatch.setattr(config, "TEACHER_PROXIMITY_RADIUS_METERS", 15.0)
    monkeypatch.setattr(config, "REFERENCE_MAX_AGE_SECONDS", 0)
    monkeypatch.setattr(config, "REVALIDATE_ASSIGNMENT_ON_SUBMIT", False)
    monkeypatch.setattr(config, "MAX_FIX_CLOCK_SKEW_MS", 5000)
    sessions._SESSION_LOCKS.clear()
    yield test_db


@pytest.fixture()
def assignment():
    return add_class_assignment("tch_1", 3, Division.A, "CS301", "Operating Systems")


@pytest.fixture()
def active_session(assignment):
    return sessions.start_session(
        teacher_id="tch_1",
        semester=3,
        division=Division.A,
        subject_code="CS301",
        initial_location=GeoPoint(latitude=TEACHER_POINT[0], longitude=TEACHER_POINT[1], accuracy=5, timestamp=now_ms()),
        teacher_name="Prof. Rao",
    )
