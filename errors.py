class AttendanceError(Exception):
    """Base class for failures reported to API callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthorizationError(AttendanceError):
    status_code = 403


class SessionNotFound(AttendanceError):
    status_code = 404


class SessionClosed(AttendanceError):
    status_code = 409


class StaleReference(AttendanceError):
    status_code = 409


class SensorUnavailable(AttendanceError):
    status_code = 503


class DatabaseUnavailable(AttendanceError):
    status_code = 503
