"""
Facade over the matcher, pipelines, attendance state machine and guest tokens.
This is the surface the API layer (and any other host) talks to.
"""
import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence, Tuple, Union

from . import config
from .attendance import AttendanceStateMachine
from .cleanup import CleanupScheduler, run_cleanup
from .clock import SystemClock
from .domain import AttendanceRecord, DescriptorSet, Guest, GuestIdentity, Identity, RegisteredUser, UserRecord
from .enrollment import EnrollmentPipeline
from .errors import UnknownIdentity, VerificationFailed
from .guests import GuestService
from .matcher import VerificationResult
from .recognition import FaceExtractor, ImageInput, TimedExtractor
from .repository import Repository
from .verification import VerificationPipeline

logger = logging.getLogger(__name__)


class AttendanceEngine:

    def __init__(
        self,
        repository: Repository,
        extractor: FaceExtractor,
        clock=None,
        match_threshold: float = config.MATCH_THRESHOLD,
        consistency_threshold: float = config.CONSISTENCY_THRESHOLD,
        min_captures: int = config.MIN_ENROLL_CAPTURES,
        max_captures: int = config.MAX_ENROLL_CAPTURES,
        late_cutoff: Union[time, str] = config.LATE_CUTOFF,
        token_ttl: timedelta = timedelta(hours=config.TOKEN_TTL_HOURS),
        retention: timedelta = timedelta(days=config.GUEST_RETENTION_DAYS),
        extractor_timeout: Optional[float] = config.EXTRACTOR_TIMEOUT_SECONDS,
    ):
        self.repository = repository
        self.clock = clock or SystemClock()
        if extractor_timeout is not None and not isinstance(extractor, TimedExtractor):
            extractor = TimedExtractor(extractor, timeout=extractor_timeout)
        self.extractor = extractor

        self.enrollment = EnrollmentPipeline(extractor, min_captures, max_captures, consistency_threshold)
        self.verification = VerificationPipeline(extractor, match_threshold)
        self.attendance = AttendanceStateMachine(repository, self.clock, late_cutoff)
        self.guests = GuestService(repository, self.enrollment, self.verification, self.clock, token_ttl, retention)

    # Biometrics

    def enroll(self, images: Sequence[ImageInput]) -> DescriptorSet:
        return self.enrollment.enroll(images)

    def verify(self, image: ImageInput, candidates: DescriptorSet) -> VerificationResult:
        return self.verification.verify(image, candidates)

    # Registered users

    def create_user(self, name: str, identifier: str, now: Optional[datetime] = None) -> UserRecord:
        user = UserRecord(
            id=str(uuid.uuid4()),
            name=name,
            identifier=identifier,
            created_at=now or self.clock.now(),
        )
        return self.repository.add_user(user)

    def enroll_user(self, user_id: str, images: Sequence[ImageInput]) -> DescriptorSet:
        """Enroll and persist; the stored set is only replaced after the whole batch passes."""
        if self.repository.get_user(user_id) is None:
            raise UnknownIdentity()
        descriptors = self.enrollment.enroll(images)
        self.repository.save_descriptor_set(RegisteredUser(user_id), descriptors)
        logger.info("Enrolled user %s with %d descriptors", user_id, len(descriptors))
        return descriptors

    def verify_user(self, user_id: str, image: ImageInput) -> Tuple[RegisteredUser, VerificationResult]:
        """Resolve a live capture to a registered user or raise VerificationFailed."""
        identity = RegisteredUser(user_id)
        descriptors = self.repository.get_descriptor_set(identity)
        if not descriptors:
            raise UnknownIdentity()
        result = self.verification.verify(image, descriptors)
        if not result.match:
            logger.info("User %s failed face verification (distance %.2f)", user_id, result.distance)
            raise VerificationFailed()
        return identity, result

    # Attendance

    def check_in(self, identity: Identity, now: Optional[datetime] = None) -> AttendanceRecord:
        return self.attendance.check_in(identity, now)

    def check_out(self, identity: Identity, now: Optional[datetime] = None) -> AttendanceRecord:
        return self.attendance.check_out(identity, now)

    def today(self, identity: Identity, now: Optional[datetime] = None) -> Optional[AttendanceRecord]:
        return self.attendance.today(identity, now)

    def history(self, identity: Identity) -> List[AttendanceRecord]:
        return self.attendance.history(identity)

    def attendance_on(self, day: Optional[date] = None) -> List[AttendanceRecord]:
        """All records for ``day`` (default: today), earliest check-in first."""
        return self.repository.list_attendance_on(day or self.clock.now().date())

    # Guests

    def register_guest(self, images: Sequence[ImageInput], consent: bool, name: str,
                       email: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[Guest, str]:
        return self.guests.register_guest(images, consent, name, email, now)

    def resume_guest(self, email: str, image: ImageInput, now: Optional[datetime] = None) -> Tuple[Guest, str]:
        return self.guests.resume_guest(email, image, now)

    def issue_token(self, guest: Guest, now: Optional[datetime] = None) -> str:
        return self.guests.issue_token(guest, now)

    def validate_token(self, token: Optional[str], now: Optional[datetime] = None) -> Guest:
        return self.guests.validate_token(token, now)

    def revoke_token(self, token: Optional[str]) -> bool:
        return self.guests.revoke_token(token)

    def check_in_guest(self, token: Optional[str], now: Optional[datetime] = None) -> AttendanceRecord:
        now = now or self.clock.now()
        guest = self.validate_token(token, now)
        return self.attendance.check_in(GuestIdentity(guest.id, token), now)

    def check_out_guest(self, token: Optional[str], now: Optional[datetime] = None) -> AttendanceRecord:
        now = now or self.clock.now()
        guest = self.validate_token(token, now)
        return self.attendance.check_out(GuestIdentity(guest.id, token), now)

    def guest_attendance(self, token: Optional[str], now: Optional[datetime] = None
                         ) -> Tuple[Optional[AttendanceRecord], List[AttendanceRecord]]:
        """Today's record and full history for the guest holding ``token``."""
        now = now or self.clock.now()
        identity = GuestIdentity(self.validate_token(token, now).id, token)
        return self.attendance.today(identity, now), self.attendance.history(identity)

    # Retention

    def run_cleanup(self, now: Optional[datetime] = None) -> int:
        return run_cleanup(self.repository, now or self.clock.now())

    def cleanup_scheduler(self, hour: int = config.CLEANUP_HOUR, minute: int = config.CLEANUP_MINUTE,
                          run_immediately: bool = False) -> CleanupScheduler:
        return CleanupScheduler(self.run_cleanup, hour=hour, minute=minute, run_immediately=run_immediately)
