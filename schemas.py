import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_ms() -> int:
    return int(time.time() * 1000)


class Division(str, Enum):
    A = "A"
    B = "B"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0, description="GPS accuracy radius in meters")
    timestamp: Optional[int] = Field(None, description="Capture time, epoch milliseconds")


class CampusBoundary(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    radius: float = Field(..., gt=0, description="meters")

    @property
    def center(self) -> GeoPoint:
        return GeoPoint(latitude=self.latitude, longitude=self.longitude)


class Teacher(BaseModel):
    teacherId: str
    name: str
    email: Optional[str] = None
    department: Optional[str] = None
    designation: Optional[str] = None
    status: str = Field("active", description="active|inactive")
    createdAt: int
    updatedAt: int


class TeacherClassAssignment(BaseModel):
    mappingId: str
    teacherId: str
    semester: int = Field(..., ge=1)
    division: Division
    subjectCode: str
    subjectName: str
    isActive: bool = True
    createdAt: int


class ClassAssignmentInput(BaseModel):
    semester: int = Field(..., ge=1)
    division: Division
    subjectCode: str
    subjectName: str


class LectureSession(BaseModel):
    sessionId: str
    teacherId: str
    teacherName: Optional[str] = None
    semester: int
    division: Division
    subjectCode: str
    subjectName: str
    status: SessionStatus = SessionStatus.ACTIVE
    startTime: int
    endTime: Optional[int] = None
    teacherLocation: GeoPoint
    locationVersion: int = 0
    geofenceRadius: float = Field(15, gt=0, description="Teacher proximity radius in meters")
    campusBoundary: CampusBoundary
    totalStudents: int = Field(0, ge=0)
    presentCount: int = Field(0, ge=0)
    absentCount: int = Field(0, ge=0)
    createdAt: int
    updatedAt: int

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


class AttendanceSubmission(BaseModel):
    sessionId: str
    studentId: str
    studentName: str
    studentEmail: Optional[str] = None
    rollNumber: Optional[str] = None
    location: GeoPoint
    submittedAt: int = Field(default_factory=now_ms)
    deviceId: Optional[str] = Field(None, description="Device fingerprint")
    userAgent: Optional[str] = None

    @field_validator("location")
    @classmethod
    def _require_accuracy(cls, value: GeoPoint) -> GeoPoint:
        if value.accuracy is None:
            raise ValueError("location.accuracy is required")
        return value


class GeofenceValidationResult(BaseModel):
    isValid: bool
    teacherProximityCheck: bool
    campusBoundaryCheck: bool
    distanceFromTeacher: float
    distanceFromCampus: float
    errorMessage: Optional[str] = None


class AttendanceRecord(BaseModel):
    recordId: str
    sessionId: str
    studentId: str
    studentName: str
    rollNumber: Optional[str] = None
    semester: int
    division: Division
    subjectCode: str
    subjectName: str
    teacherId: str
    teacherName: Optional[str] = None
    marked: bool
    markedAt: int
    location: GeoPoint
    distanceFromTeacher: Optional[float] = None
    distanceFromCampus: Optional[float] = None
    validationPassed: bool
    failureReason: Optional[str] = None
    deviceId: Optional[str] = None
    googleSheetExported: bool = False
    createdAt: int


class SubmissionStatus(str, Enum):
    MARKED = "marked"
    LOW_ACCURACY = "low_accuracy"
    GEOFENCE_FAILED = "geofence_failed"
    ALREADY_MARKED = "already_marked"


class SubmissionResult(BaseModel):
    status: SubmissionStatus
    record: AttendanceRecord
    validation: Optional[GeofenceValidationResult] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status in (SubmissionStatus.MARKED, SubmissionStatus.ALREADY_MARKED)
