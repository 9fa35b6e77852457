"""
Error taxonomy for the attendance engine.

Every error carries a stable ``code`` and the HTTP ``status_code`` the service
layer answers with. Biometric and state-machine errors are expected outcomes;
``DependencyUnavailable`` marks infrastructure trouble the caller may retry.
"""
from typing import Optional


class AttendanceEngineError(Exception):
    """Base class for all engine errors."""
    code = "engine_error"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__


# Matcher (should not happen with a single extractor model)

class MatcherError(AttendanceEngineError):
    """Descriptor comparison failed."""
    code = "matcher_error"
    status_code = 500


class DimensionMismatch(MatcherError):
    """Descriptors have different lengths."""
    code = "dimension_mismatch"


class EmptySet(MatcherError):
    """Descriptor set is empty."""
    code = "empty_set"


# Enrollment

class EnrollmentError(AttendanceEngineError):
    """Enrollment failed."""
    code = "enrollment_error"
    status_code = 422


class InsufficientCaptures(EnrollmentError):
    code = "insufficient_captures"

    def __init__(self, received: int, minimum: int):
        super().__init__(f"Need at least {minimum} face captures for enrollment, got {received}")
        self.received = received
        self.minimum = minimum


class TooManyCaptures(EnrollmentError):
    code = "too_many_captures"

    def __init__(self, received: int, maximum: int):
        super().__init__(f"At most {maximum} face captures are accepted for enrollment, got {received}")
        self.received = received
        self.maximum = maximum


class NoFaceDetected(EnrollmentError):
    code = "no_face_detected"

    def __init__(self, capture_index: int):
        super().__init__(f"No face detected in capture {capture_index + 1}. Please try again.")
        self.capture_index = capture_index


class QualityRejected(EnrollmentError):
    code = "quality_rejected"

    def __init__(self, capture_index: int, reason: str):
        super().__init__(f"Capture {capture_index + 1}: {reason}")
        self.capture_index = capture_index
        self.reason = reason


class InconsistentCaptures(EnrollmentError):
    """Face captures are too inconsistent. Please try again in consistent lighting."""
    code = "inconsistent_captures"


# Attendance state machine

class AttendanceError(AttendanceEngineError):
    """Attendance transition rejected."""
    code = "attendance_error"
    status_code = 409


class AlreadyCheckedIn(AttendanceError):
    """Already checked in today"""
    code = "already_checked_in"


class NoCheckIn(AttendanceError):
    """No check-in found for today"""
    code = "no_check_in"


class AlreadyCheckedOut(AttendanceError):
    """Already checked out today"""
    code = "already_checked_out"


# Guest tokens. Both errors share one public message so callers cannot tell
# an unknown token from an expired one.

class TokenError(AttendanceEngineError):
    """Unauthorized"""
    code = "unauthorized"
    status_code = 401

    def __init__(self, message: Optional[str] = None):
        super().__init__(TokenError.__doc__)


class InvalidToken(TokenError):
    pass


class TokenExpired(TokenError):
    pass


# Identity resolution

class UnknownIdentity(AttendanceEngineError):
    """Identity not found or not enrolled"""
    code = "unknown_identity"
    status_code = 404


class VerificationFailed(AttendanceEngineError):
    """Face verification failed"""
    code = "verification_failed"
    status_code = 401


class ConsentRequired(AttendanceEngineError):
    """Guest consent is required before storing biometric data"""
    code = "consent_required"
    status_code = 400


# Infrastructure

class DependencyUnavailable(AttendanceEngineError):
    """A dependency (face extractor or storage) is unavailable"""
    code = "dependency_unavailable"
    status_code = 503


class RepositoryError(AttendanceEngineError):
    """Repository operation failed."""
    code = "repository_error"
    status_code = 500


class DuplicateRecord(RepositoryError):
    """Record already exists"""
    code = "duplicate_record"
    status_code = 409


class InvalidImage(AttendanceEngineError):
    """Invalid image format"""
    code = "invalid_image"
    status_code = 400
