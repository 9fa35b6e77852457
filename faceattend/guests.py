"""
Guest identities and their bearer tokens.

Only a SHA-256 digest of each token is stored. Unknown and expired tokens are
rejected through the same code path and the same public error message.
"""
import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

from . import config
from .clock import SystemClock
from .domain import CheckInToken, Guest
from .enrollment import EnrollmentPipeline
from .errors import ConsentRequired, InvalidToken, TokenExpired, UnknownIdentity, VerificationFailed
from .recognition import ImageInput
from .repository import Repository
from .verification import VerificationPipeline

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32

# Compared against when the presented token is unknown, so both paths do the same work.
_MISSING_DIGEST = hashlib.sha256(b"missing-token").hexdigest()
_MISSING_TOKEN = CheckInToken(token_hash=_MISSING_DIGEST, guest_id="", issued_at=datetime.min, expires_at=datetime.min)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class GuestService:
    """Guest registration, token issuance/validation and logout."""

    def __init__(
        self,
        repository: Repository,
        enrollment: EnrollmentPipeline,
        verification: VerificationPipeline,
        clock=None,
        token_ttl: timedelta = timedelta(hours=config.TOKEN_TTL_HOURS),
        retention: timedelta = timedelta(days=config.GUEST_RETENTION_DAYS),
    ):
        self.repository = repository
        self.enrollment = enrollment
        self.verification = verification
        self.clock = clock or SystemClock()
        self.token_ttl = token_ttl
        self.retention = retention

    def register_guest(self, images: Sequence[ImageInput], consent: bool, name: str,
                       email: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[Guest, str]:
        """
        Enroll a new guest and hand out their first token.

        Consent is checked before any capture is processed. The guest is only
        persisted after enrollment succeeds.
        """
        if not consent:
            raise ConsentRequired()
        now = now or self.clock.now()

        descriptors = self.enrollment.enroll(images)

        guest = Guest(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            consent_given=True,
            consent_at=now,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.retention,
            descriptors=descriptors,
        )
        self.repository.add_guest(guest)
        logger.info("Registered guest %s (expires %s)", guest.id, guest.expires_at.isoformat())
        return guest, self.issue_token(guest, now)

    def resume_guest(self, email: str, image: ImageInput, now: Optional[datetime] = None) -> Tuple[Guest, str]:
        """Re-authenticate a returning guest by face and issue a fresh token."""
        now = now or self.clock.now()
        guest = self.repository.find_guest_by_email(email)
        if guest is None or guest.is_expired(now) or not guest.descriptors:
            raise UnknownIdentity()

        result = self.verification.verify(image, guest.descriptors)
        if not result.match:
            logger.info("Guest %s failed face verification (distance %.2f)", guest.id, result.distance)
            raise VerificationFailed()

        guest = self._refresh(guest, now)
        return guest, self.issue_token(guest, now)

    def issue_token(self, guest: Guest, now: Optional[datetime] = None) -> str:
        """Mint a new random token bound to ``guest``; returns the raw token."""
        now = now or self.clock.now()
        token = secrets.token_urlsafe(TOKEN_BYTES)
        self.repository.add_token(CheckInToken(
            token_hash=hash_token(token),
            guest_id=guest.id,
            issued_at=now,
            expires_at=now + self.token_ttl,
        ))
        return token

    def validate_token(self, token: Optional[str], now: Optional[datetime] = None) -> Guest:
        """
        Resolve a bearer token to its guest and refresh the guest's retention.

        Raises:
            InvalidToken: token absent, unknown, or its guest is gone
            TokenExpired: token or guest retention has lapsed
        """
        now = now or self.clock.now()
        digest = hash_token(token or "")

        stored = self.repository.get_token(digest) if token else None
        candidate = stored or _MISSING_TOKEN
        known = hmac.compare_digest(candidate.token_hash, digest) and stored is not None
        expired = candidate.is_expired(now)

        if not known:
            raise InvalidToken()
        if expired:
            raise TokenExpired()

        guest = self.repository.get_guest(stored.guest_id)
        if guest is None:
            raise InvalidToken()
        if guest.is_expired(now):
            raise TokenExpired()
        return self._refresh(guest, now)

    def revoke_token(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return self.repository.delete_token(hash_token(token))

    def _refresh(self, guest: Guest, now: datetime) -> Guest:
        refreshed = self.repository.touch_guest(guest.id, now, now + self.retention)
        if refreshed is None:
            raise InvalidToken()
        return refreshed
