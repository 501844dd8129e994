"""Teacher to class assignments.

A teacher may run a lecture for a (semester, division, subject) only when an
active assignment row says so. Rows are never deleted; removal flips
``isActive`` so the history stays queryable.
"""
import logging
import uuid
from typing import Iterable, List, Optional

import config
from database import create_document, get_document, get_documents, update_document
from schemas import ClassAssignmentInput, Division, Teacher, TeacherClassAssignment, now_ms

log = logging.getLogger(__name__)

TEACHERS = "teacher"
ASSIGNMENTS = "teacherclassmapping"


def _check_semester(semester: int) -> None:
    if not 1 <= semester <= config.MAX_SEMESTER:
        raise ValueError(f"semester must be between 1 and {config.MAX_SEMESTER}")


def create_teacher(
    name: str,
    email: Optional[str] = None,
    department: Optional[str] = None,
    designation: Optional[str] = None,
    teacher_id: Optional[str] = None,
) -> Teacher:
    now = now_ms()
    teacher = Teacher(
        teacherId=teacher_id or f"tch_{uuid.uuid4().hex[:12]}",
        name=name,
        email=email,
        department=department,
        designation=designation,
        status="active",
        createdAt=now,
        updatedAt=now,
    )
    create_document(TEACHERS, teacher)
    log.info("teacher %s registered", teacher.teacherId)
    return teacher


def get_teacher(teacher_id: str) -> Optional[Teacher]:
    doc = get_document(TEACHERS, {"teacherId": teacher_id})
    return Teacher.model_validate(doc) if doc else None


def add_class_assignment(
    teacher_id: str,
    semester: int,
    division: Division,
    subject_code: str,
    subject_name: str,
) -> TeacherClassAssignment:
    _check_semester(semester)
    mapping = TeacherClassAssignment(
        mappingId=f"map_{uuid.uuid4().hex[:12]}",
        teacherId=teacher_id,
        semester=semester,
        division=division,
        subjectCode=subject_code,
        subjectName=subject_name,
        isActive=True,
        createdAt=now_ms(),
    )
    create_document(ASSIGNMENTS, mapping)
    return mapping


def create_class_assignments(
    teacher_id: str, assignments: Iterable[ClassAssignmentInput]
) -> List[TeacherClassAssignment]:
    # Validate everything first so a bad row does not leave a partial set behind.
    assignments = list(assignments)
    for a in assignments:
        _check_semester(a.semester)
    return [
        add_class_assignment(teacher_id, a.semester, a.division, a.subjectCode, a.subjectName)
        for a in assignments
    ]


def remove_class_assignment(mapping_id: str) -> bool:
    doc = update_document(ASSIGNMENTS, {"mappingId": mapping_id}, {"$set": {"isActive": False}})
    if doc:
        log.info("assignment %s deactivated", mapping_id)
    return doc is not None


def get_teacher_assignments(teacher_id: str, include_inactive: bool = False) -> List[TeacherClassAssignment]:
    query = {"teacherId": teacher_id}
    if not include_inactive:
        query["isActive"] = True
    return [TeacherClassAssignment.model_validate(d) for d in get_documents(ASSIGNMENTS, query)]


def get_teacher_semesters(teacher_id: str) -> List[int]:
    return sorted({m.semester for m in get_teacher_assignments(teacher_id)})


def get_teacher_divisions(teacher_id: str, semester: int) -> List[Division]:
    divisions = {m.division for m in get_teacher_assignments(teacher_id) if m.semester == semester}
    return sorted(divisions, key=lambda d: d.value)


def get_teacher_subjects(teacher_id: str, semester: int, division: Division) -> List[dict]:
    return [
        {"code": m.subjectCode, "name": m.subjectName}
        for m in get_teacher_assignments(teacher_id)
        if m.semester == semester and m.division == division
    ]


def find_assignment(
    teacher_id: str, semester: int, division: Division, subject_code: str
) -> Optional[TeacherClassAssignment]:
    doc = get_document(
        ASSIGNMENTS,
        {
            "teacherId": teacher_id,
            "semester": semester,
            "division": Division(division).value,
            "subjectCode": subject_code,
            "isActive": True,
        },
    )
    return TeacherClassAssignment.model_validate(doc) if doc else None


def can_teach(teacher_id: str, semester: int, division: Division, subject_code: str) -> bool:
    return find_assignment(teacher_id, semester, division, subject_code) is not None
