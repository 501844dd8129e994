import os


def _parse_bool(value, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value, fallback: list) -> list:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


# ----------------------
# Auth
# ----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")

CORS_ALLOW_ORIGINS = _parse_csv(os.getenv("CORS_ALLOW_ORIGINS"), ["*"])
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

# ----------------------
# Geofence
# ----------------------
TEACHER_PROXIMITY_RADIUS_METERS = float(os.getenv("TEACHER_PROXIMITY_RADIUS_METERS", "15"))

# Bharati Vidyapeeth University, Kharghar campus
CAMPUS_LATITUDE = float(os.getenv("CAMPUS_LATITUDE", "19.0434"))
CAMPUS_LONGITUDE = float(os.getenv("CAMPUS_LONGITUDE", "73.0618"))
CAMPUS_RADIUS_METERS = float(os.getenv("CAMPUS_RADIUS_METERS", "500"))

MAX_GPS_ACCURACY_METERS = float(os.getenv("MAX_GPS_ACCURACY_METERS", "50"))

# 0 disables the staleness bound on the teacher's reference point
REFERENCE_MAX_AGE_SECONDS = max(0, int(os.getenv("REFERENCE_MAX_AGE_SECONDS", "0")))
REVALIDATE_ASSIGNMENT_ON_SUBMIT = _parse_bool(os.getenv("REVALIDATE_ASSIGNMENT_ON_SUBMIT"), False)

MAX_SEMESTER = int(os.getenv("MAX_SEMESTER", "6"))

# ----------------------
# Teacher location stream
# ----------------------
TRACKER_HIGH_ACCURACY = _parse_bool(os.getenv("TRACKER_HIGH_ACCURACY"), True)
TRACKER_TIMEOUT_MS = max(1, int(os.getenv("TRACKER_TIMEOUT_MS", "10000")))
TRACKER_MAX_AGE_MS = max(0, int(os.getenv("TRACKER_MAX_AGE_MS", "0")))
# Fix timestamps further than this ahead of server time are pulled back to it
MAX_FIX_CLOCK_SKEW_MS = max(0, int(os.getenv("MAX_FIX_CLOCK_SKEW_MS", "5000")))
