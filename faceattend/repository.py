"""
Storage contract for the engine and an in-memory implementation.

The attendance and token stores are the only mutable shared state. Both are
guarded per key (identity + date, token digest, guest id); there is no global
lock held across operations.
"""
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, Hashable, List, Optional, Tuple

from .domain import (
    AttendanceRecord,
    AttendanceStatus,
    CheckInToken,
    DescriptorSet,
    Guest,
    Identity,
    IdentityKind,
    UserRecord,
)
from .errors import DuplicateRecord, UnknownIdentity


class Repository(ABC):
    """Persistence collaborator. Implementations must make the two attendance
    writes atomic: ``create_attendance`` is insert-if-absent and
    ``complete_attendance`` only closes a record that is still open."""

    # Users

    @abstractmethod
    def add_user(self, user: UserRecord) -> UserRecord: ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    # Descriptor sets (users and guests)

    @abstractmethod
    def save_descriptor_set(self, identity: Identity, descriptors: DescriptorSet) -> None:
        """Replace the identity's descriptor set wholesale."""

    @abstractmethod
    def get_descriptor_set(self, identity: Identity) -> Optional[DescriptorSet]: ...

    # Guests

    @abstractmethod
    def add_guest(self, guest: Guest) -> Guest: ...

    @abstractmethod
    def get_guest(self, guest_id: str) -> Optional[Guest]: ...

    @abstractmethod
    def find_guest_by_email(self, email: str) -> Optional[Guest]: ...

    @abstractmethod
    def touch_guest(self, guest_id: str, last_activity_at: datetime, expires_at: datetime) -> Optional[Guest]: ...

    @abstractmethod
    def expired_guests(self, now: datetime) -> List[Guest]:
        """All guests with ``expires_at < now``."""

    @abstractmethod
    def delete_guest(self, guest_id: str) -> bool:
        """Delete a guest with its tokens and attendance history."""

    # Attendance

    @abstractmethod
    def get_attendance(self, identity: Identity, day: date) -> Optional[AttendanceRecord]: ...

    @abstractmethod
    def create_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        """Insert a record; raises DuplicateRecord if one exists for (identity, date)."""

    @abstractmethod
    def complete_attendance(self, identity: Identity, day: date, check_out_time: datetime,
                            hours_worked: float, status: AttendanceStatus) -> Optional[AttendanceRecord]:
        """Close an open record. Returns None if there is no open record to close."""

    @abstractmethod
    def list_attendance(self, identity: Identity) -> List[AttendanceRecord]:
        """Attendance history, most recent date first."""

    @abstractmethod
    def list_attendance_on(self, day: date) -> List[AttendanceRecord]:
        """Every record for one date, earliest check-in first."""

    # Tokens

    @abstractmethod
    def add_token(self, token: CheckInToken) -> CheckInToken: ...

    @abstractmethod
    def get_token(self, token_hash: str) -> Optional[CheckInToken]: ...

    @abstractmethod
    def delete_token(self, token_hash: str) -> bool: ...

    @abstractmethod
    def delete_expired_tokens(self, now: datetime) -> int: ...


class KeyedLock:
    """Reference-counted lock per key; entries are dropped once released."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


AttendanceKey = Tuple[IdentityKind, str, date]


class InMemoryRepository(Repository):
    """
    Dictionary-backed repository for tests and single-process deployments.

    Each read-check-write runs under the per-key lock of the entry it touches.
    ``_index_lock`` only guards individual dict reads, writes and scans and is
    never held while waiting on a per-key lock.
    """

    def __init__(self):
        self._users: Dict[str, UserRecord] = {}
        self._guests: Dict[str, Guest] = {}
        self._attendance: Dict[AttendanceKey, AttendanceRecord] = {}
        self._tokens: Dict[str, CheckInToken] = {}
        self._locks = KeyedLock()
        self._index_lock = threading.Lock()

    @staticmethod
    def _attendance_key(identity: Identity, day: date) -> AttendanceKey:
        kind, identity_id = identity.key
        return kind, identity_id, day

    def _get(self, table: dict, key):
        with self._index_lock:
            return table.get(key)

    def _put(self, table: dict, key, value):
        with self._index_lock:
            table[key] = value

    def _pop(self, table: dict, key):
        with self._index_lock:
            return table.pop(key, None)

    # Users

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._locks.hold(("user", user.id)), self._locks.hold(("identifier", user.identifier)):
            with self._index_lock:
                taken = user.id in self._users or any(u.identifier == user.identifier for u in self._users.values())
            if taken:
                raise DuplicateRecord(f"User {user.identifier} already exists")
            self._put(self._users, user.id, user)
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self._get(self._users, user_id)

    # Descriptor sets

    def save_descriptor_set(self, identity: Identity, descriptors: DescriptorSet) -> None:
        kind, identity_id = identity.key
        table = self._users if kind is IdentityKind.USER else self._guests
        with self._locks.hold((kind.value, identity_id)):
            owner = self._get(table, identity_id)
            if owner is None:
                raise UnknownIdentity()
            self._put(table, identity_id, replace(owner, descriptors=descriptors))

    def get_descriptor_set(self, identity: Identity) -> Optional[DescriptorSet]:
        kind, identity_id = identity.key
        owner = self._get(self._users if kind is IdentityKind.USER else self._guests, identity_id)
        return owner.descriptors if owner else None

    # Guests

    def add_guest(self, guest: Guest) -> Guest:
        with self._locks.hold(("guest", guest.id)):
            if self._get(self._guests, guest.id) is not None:
                raise DuplicateRecord(f"Guest {guest.id} already exists")
            self._put(self._guests, guest.id, guest)
        return guest

    def get_guest(self, guest_id: str) -> Optional[Guest]:
        return self._get(self._guests, guest_id)

    def find_guest_by_email(self, email: str) -> Optional[Guest]:
        with self._index_lock:
            for guest in self._guests.values():
                if guest.email and guest.email.lower() == email.lower():
                    return guest
        return None

    def touch_guest(self, guest_id: str, last_activity_at: datetime, expires_at: datetime) -> Optional[Guest]:
        with self._locks.hold(("guest", guest_id)):
            guest = self._get(self._guests, guest_id)
            if guest is None:
                return None
            guest = replace(guest, last_activity_at=last_activity_at, expires_at=expires_at)
            self._put(self._guests, guest_id, guest)
            return guest

    def expired_guests(self, now: datetime) -> List[Guest]:
        with self._index_lock:
            return [guest for guest in self._guests.values() if guest.expires_at < now]

    def delete_guest(self, guest_id: str) -> bool:
        with self._locks.hold(("guest", guest_id)):
            if self._pop(self._guests, guest_id) is None:
                return False
            with self._index_lock:
                for key in [k for k in self._attendance if k[0] is IdentityKind.GUEST and k[1] == guest_id]:
                    del self._attendance[key]
                for token_hash in [h for h, t in self._tokens.items() if t.guest_id == guest_id]:
                    del self._tokens[token_hash]
            return True

    # Attendance

    def get_attendance(self, identity: Identity, day: date) -> Optional[AttendanceRecord]:
        return self._get(self._attendance, self._attendance_key(identity, day))

    def create_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        key = self._attendance_key(record.identity, record.date)
        with self._locks.hold(key):
            if self._get(self._attendance, key) is not None:
                raise DuplicateRecord("Attendance already recorded for this date")
            self._put(self._attendance, key, record)
        return record

    def complete_attendance(self, identity: Identity, day: date, check_out_time: datetime,
                            hours_worked: float, status: AttendanceStatus) -> Optional[AttendanceRecord]:
        key = self._attendance_key(identity, day)
        with self._locks.hold(key):
            record = self._get(self._attendance, key)
            if record is None or record.checked_out:
                return None
            record = record.close(check_out_time, hours_worked, status)
            self._put(self._attendance, key, record)
            return record

    def list_attendance(self, identity: Identity) -> List[AttendanceRecord]:
        kind, identity_id = identity.key
        with self._index_lock:
            records = [r for k, r in self._attendance.items() if k[0] is kind and k[1] == identity_id]
        return sorted(records, key=lambda r: r.date, reverse=True)

    def list_attendance_on(self, day: date) -> List[AttendanceRecord]:
        with self._index_lock:
            records = [r for k, r in self._attendance.items() if k[2] == day]
        return sorted(records, key=lambda r: (r.check_in_time or datetime.min))

    # Tokens

    def add_token(self, token: CheckInToken) -> CheckInToken:
        with self._locks.hold(("token", token.token_hash)):
            if self._get(self._tokens, token.token_hash) is not None:
                raise DuplicateRecord("Token already exists")
            self._put(self._tokens, token.token_hash, token)
        return token

    def get_token(self, token_hash: str) -> Optional[CheckInToken]:
        return self._get(self._tokens, token_hash)

    def delete_token(self, token_hash: str) -> bool:
        with self._locks.hold(("token", token_hash)):
            return self._pop(self._tokens, token_hash) is not None

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._index_lock:
            expired = [h for h, t in self._tokens.items() if t.expires_at < now]
            for token_hash in expired:
                del self._tokens[token_hash]
        return len(expired)
