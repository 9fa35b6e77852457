"""
Runtime configuration.
Every value can be overridden through an environment variable of the same name.
"""
import os
from datetime import time

# Matching
MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", "0.6"))
CONSISTENCY_THRESHOLD = float(os.getenv("CONSISTENCY_THRESHOLD", "0.4"))

# Capture quality (pixels, against the reference frame below)
MIN_DETECTION_CONFIDENCE = float(os.getenv("MIN_DETECTION_CONFIDENCE", "0.9"))
MIN_FACE_AREA = int(os.getenv("MIN_FACE_AREA", "10000"))
MAX_FACE_AREA = int(os.getenv("MAX_FACE_AREA", "640000"))
FRAME_WIDTH = int(os.getenv("FRAME_WIDTH", "640"))
FRAME_HEIGHT = int(os.getenv("FRAME_HEIGHT", "480"))
MAX_CENTER_OFFSET_X = int(os.getenv("MAX_CENTER_OFFSET_X", "150"))
MAX_CENTER_OFFSET_Y = int(os.getenv("MAX_CENTER_OFFSET_Y", "120"))

# Enrollment
MIN_ENROLL_CAPTURES = int(os.getenv("MIN_ENROLL_CAPTURES", "5"))
MAX_ENROLL_CAPTURES = int(os.getenv("MAX_ENROLL_CAPTURES", "10"))

# Attendance
LATE_CUTOFF = os.getenv("LATE_CUTOFF", "09:00")

# Guests
TOKEN_TTL_HOURS = float(os.getenv("TOKEN_TTL_HOURS", "24"))
GUEST_RETENTION_DAYS = float(os.getenv("GUEST_RETENTION_DAYS", "7"))
# Daily retention cleanup, local wall-clock time
CLEANUP_HOUR = int(os.getenv("CLEANUP_HOUR", "2"))
CLEANUP_MINUTE = int(os.getenv("CLEANUP_MINUTE", "0"))

# Face extractor
MODEL_NAME = os.getenv("MODEL_NAME", "buffalo_l")
USE_GPU = os.getenv("USE_GPU", "true").lower() in ("1", "true", "yes")
EXTRACTOR_TIMEOUT_SECONDS = float(os.getenv("EXTRACTOR_TIMEOUT_SECONDS", "10"))

# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./attendance.db")

# Logging
LOG_FILE = os.getenv("LOG_FILE", "attendance.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def parse_cutoff(value: str) -> time:
    """Parse an ISO ``HH:MM`` or ``HH:MM:SS`` string into a ``datetime.time``."""
    return time.fromisoformat(value.strip())
