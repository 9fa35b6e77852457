"""
SQLAlchemy-backed Repository.

One session per operation. The unique (identity, date) constraint makes
check-in an atomic insert-if-absent; check-out is a conditional UPDATE on
``check_out_time IS NULL``.
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError

from . import domain, models
from .database import SessionLocal
from .domain import AttendanceStatus, DescriptorSet, Identity, IdentityKind
from .errors import DependencyUnavailable, DuplicateRecord, UnknownIdentity
from .repository import Repository

logger = logging.getLogger(__name__)


def _descriptors_from_row(row) -> Optional[DescriptorSet]:
    if row.descriptors is None or not row.descriptor_dim:
        return None
    return DescriptorSet.from_bytes(row.descriptors, row.descriptor_dim)


def _to_user(row: models.User) -> domain.UserRecord:
    return domain.UserRecord(
        id=row.id,
        name=row.name,
        identifier=row.identifier,
        created_at=row.created_at,
        descriptors=_descriptors_from_row(row),
    )


def _to_guest(row: models.Guest) -> domain.Guest:
    return domain.Guest(
        id=row.id,
        name=row.name,
        email=row.email,
        consent_given=row.consent_given,
        consent_at=row.consent_at,
        created_at=row.created_at,
        last_activity_at=row.last_activity_at,
        expires_at=row.expires_at,
        descriptors=_descriptors_from_row(row),
    )


def _to_record(row: models.Attendance) -> domain.AttendanceRecord:
    return domain.AttendanceRecord(
        identity=domain.identity_from_key(row.identity_kind, row.identity_id),
        date=row.date,
        check_in_time=row.check_in_time,
        check_out_time=row.check_out_time,
        status=AttendanceStatus(row.status),
        hours_worked=float(row.hours_worked or 0.0),
    )


def _to_token(row: models.CheckInToken) -> domain.CheckInToken:
    return domain.CheckInToken(
        token_hash=row.token_hash,
        guest_id=row.guest_id,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
    )


class SqlRepository(Repository):

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise DuplicateRecord(str(e.orig)) from e
        except OperationalError as e:
            db.rollback()
            logger.error("Database unavailable: %s", e)
            raise DependencyUnavailable("Database unavailable") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _attendance_query(db, identity: Identity, day: date):
        kind, identity_id = identity.key
        return db.query(models.Attendance).filter(
            models.Attendance.identity_kind == kind.value,
            models.Attendance.identity_id == identity_id,
            models.Attendance.date == day,
        )

    # Users

    def add_user(self, user: domain.UserRecord) -> domain.UserRecord:
        with self._session() as db:
            db.add(models.User(
                id=user.id,
                name=user.name,
                identifier=user.identifier,
                descriptors=user.descriptors.to_bytes() if user.descriptors else None,
                descriptor_dim=user.descriptors.dimension if user.descriptors else None,
                created_at=user.created_at,
            ))
            db.flush()
        return user

    def get_user(self, user_id: str) -> Optional[domain.UserRecord]:
        with self._session() as db:
            row = db.get(models.User, user_id)
            return _to_user(row) if row else None

    # Descriptor sets

    def save_descriptor_set(self, identity: Identity, descriptors: DescriptorSet) -> None:
        kind, identity_id = identity.key
        model = models.User if kind is IdentityKind.USER else models.Guest
        with self._session() as db:
            row = db.get(model, identity_id)
            if row is None:
                raise UnknownIdentity()
            row.descriptors = descriptors.to_bytes()
            row.descriptor_dim = descriptors.dimension

    def get_descriptor_set(self, identity: Identity) -> Optional[DescriptorSet]:
        kind, identity_id = identity.key
        model = models.User if kind is IdentityKind.USER else models.Guest
        with self._session() as db:
            row = db.get(model, identity_id)
            return _descriptors_from_row(row) if row else None

    # Guests

    def add_guest(self, guest: domain.Guest) -> domain.Guest:
        with self._session() as db:
            db.add(models.Guest(
                id=guest.id,
                name=guest.name,
                email=guest.email,
                consent_given=guest.consent_given,
                consent_at=guest.consent_at,
                descriptors=guest.descriptors.to_bytes() if guest.descriptors else None,
                descriptor_dim=guest.descriptors.dimension if guest.descriptors else None,
                created_at=guest.created_at,
                last_activity_at=guest.last_activity_at,
                expires_at=guest.expires_at,
            ))
            db.flush()
        return guest

    def get_guest(self, guest_id: str) -> Optional[domain.Guest]:
        with self._session() as db:
            row = db.get(models.Guest, guest_id)
            return _to_guest(row) if row else None

    def find_guest_by_email(self, email: str) -> Optional[domain.Guest]:
        with self._session() as db:
            row = db.query(models.Guest).filter(func.lower(models.Guest.email) == email.lower()).first()
            return _to_guest(row) if row else None

    def touch_guest(self, guest_id: str, last_activity_at: datetime, expires_at: datetime) -> Optional[domain.Guest]:
        with self._session() as db:
            row = db.get(models.Guest, guest_id)
            if row is None:
                return None
            row.last_activity_at = last_activity_at
            row.expires_at = expires_at
            db.flush()
            return _to_guest(row)

    def expired_guests(self, now: datetime) -> List[domain.Guest]:
        with self._session() as db:
            rows = db.query(models.Guest).filter(models.Guest.expires_at < now).all()
            return [_to_guest(row) for row in rows]

    def delete_guest(self, guest_id: str) -> bool:
        with self._session() as db:
            deleted = db.query(models.Guest).filter(models.Guest.id == guest_id).delete(synchronize_session=False)
            if not deleted:
                return False
            db.query(models.CheckInToken).filter(models.CheckInToken.guest_id == guest_id).delete(
                synchronize_session=False)
            db.query(models.Attendance).filter(
                models.Attendance.identity_kind == IdentityKind.GUEST.value,
                models.Attendance.identity_id == guest_id,
            ).delete(synchronize_session=False)
            return True

    # Attendance

    def get_attendance(self, identity: Identity, day: date) -> Optional[domain.AttendanceRecord]:
        with self._session() as db:
            row = self._attendance_query(db, identity, day).first()
            return _to_record(row) if row else None

    def create_attendance(self, record: domain.AttendanceRecord) -> domain.AttendanceRecord:
        kind, identity_id = record.identity.key
        with self._session() as db:
            db.add(models.Attendance(
                identity_kind=kind.value,
                identity_id=identity_id,
                date=record.date,
                check_in_time=record.check_in_time,
                check_out_time=record.check_out_time,
                status=record.status.value,
                hours_worked=record.hours_worked,
                created_at=record.check_in_time or datetime.now(),
            ))
            db.flush()
        return record

    def complete_attendance(self, identity: Identity, day: date, check_out_time: datetime,
                            hours_worked: float, status: AttendanceStatus) -> Optional[domain.AttendanceRecord]:
        with self._session() as db:
            updated = self._attendance_query(db, identity, day).filter(
                models.Attendance.check_out_time.is_(None)
            ).update({
                models.Attendance.check_out_time: check_out_time,
                models.Attendance.hours_worked: hours_worked,
                models.Attendance.status: status.value,
            }, synchronize_session=False)
            if not updated:
                return None
            row = self._attendance_query(db, identity, day).first()
            return _to_record(row)

    def list_attendance(self, identity: Identity) -> List[domain.AttendanceRecord]:
        kind, identity_id = identity.key
        with self._session() as db:
            rows = db.query(models.Attendance).filter(
                models.Attendance.identity_kind == kind.value,
                models.Attendance.identity_id == identity_id,
            ).order_by(models.Attendance.date.desc()).all()
            return [_to_record(row) for row in rows]

    def list_attendance_on(self, day: date) -> List[domain.AttendanceRecord]:
        with self._session() as db:
            rows = db.query(models.Attendance).filter(models.Attendance.date == day).order_by(
                models.Attendance.check_in_time.asc()).all()
            return [_to_record(row) for row in rows]

    # Tokens

    def add_token(self, token: domain.CheckInToken) -> domain.CheckInToken:
        with self._session() as db:
            db.add(models.CheckInToken(
                token_hash=token.token_hash,
                guest_id=token.guest_id,
                issued_at=token.issued_at,
                expires_at=token.expires_at,
            ))
            db.flush()
        return token

    def get_token(self, token_hash: str) -> Optional[domain.CheckInToken]:
        with self._session() as db:
            row = db.get(models.CheckInToken, token_hash)
            return _to_token(row) if row else None

    def delete_token(self, token_hash: str) -> bool:
        with self._session() as db:
            deleted = db.query(models.CheckInToken).filter(
                models.CheckInToken.token_hash == token_hash).delete(synchronize_session=False)
            return deleted > 0

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._session() as db:
            return db.query(models.CheckInToken).filter(
                models.CheckInToken.expires_at < now).delete(synchronize_session=False)
