"""
Domain types shared by the engine, the repositories and the API layer.
"""
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Iterable, Iterator, Optional, Tuple, Union

import numpy as np


class DescriptorSet:
    """
    Immutable, ordered group of face descriptors belonging to one identity.

    Backed by a read-only 2-D float array of shape ``(count, dimension)``.
    """

    __slots__ = ("_vectors",)

    def __init__(self, descriptors: Iterable):
        if isinstance(descriptors, DescriptorSet):
            descriptors = descriptors.vectors
        elif not isinstance(descriptors, np.ndarray):
            descriptors = list(descriptors)
        vectors = np.array(descriptors, dtype=np.float64)
        if vectors.size == 0:
            vectors = vectors.reshape(0, 0)
        elif vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        elif vectors.ndim != 2:
            raise ValueError(f"Descriptors must be 1-D vectors, got array of shape {vectors.shape}")
        vectors.setflags(write=False)
        self._vectors = vectors

    @property
    def vectors(self) -> np.ndarray:
        return self._vectors

    @property
    def dimension(self) -> int:
        return int(self._vectors.shape[1])

    def __len__(self) -> int:
        return int(self._vectors.shape[0])

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self._vectors)

    def __getitem__(self, index: int) -> np.ndarray:
        return self._vectors[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, DescriptorSet):
            return NotImplemented
        return self._vectors.shape == other._vectors.shape and bool(np.array_equal(self._vectors, other._vectors))

    def __repr__(self) -> str:
        return f"DescriptorSet(count={len(self)}, dimension={self.dimension})"

    def to_bytes(self) -> bytes:
        """Serialize as float32 bytes (dimension must be stored alongside)."""
        return self._vectors.astype(np.float32).tobytes()

    @classmethod
    def from_bytes(cls, data: bytes, dimension: int) -> "DescriptorSet":
        flat = np.frombuffer(data, dtype=np.float32)
        return cls(flat.reshape(-1, dimension))


class IdentityKind(str, Enum):
    USER = "user"
    GUEST = "guest"


@dataclass(frozen=True)
class RegisteredUser:
    """Persistent account identity."""
    user_id: str

    @property
    def key(self) -> Tuple[IdentityKind, str]:
        return IdentityKind.USER, self.user_id


@dataclass(frozen=True)
class GuestIdentity:
    """Ephemeral visitor identity, authenticated by a check-in token."""
    guest_id: str
    token: Optional[str] = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> Tuple[IdentityKind, str]:
        return IdentityKind.GUEST, self.guest_id


Identity = Union[RegisteredUser, GuestIdentity]


def identity_from_key(kind: Union[IdentityKind, str], identity_id: str) -> Identity:
    if IdentityKind(kind) is IdentityKind.USER:
        return RegisteredUser(identity_id)
    return GuestIdentity(identity_id)


@dataclass(frozen=True)
class UserRecord:
    id: str
    name: str
    identifier: str
    created_at: datetime
    descriptors: Optional[DescriptorSet] = None

    @property
    def identity(self) -> RegisteredUser:
        return RegisteredUser(self.id)


@dataclass(frozen=True)
class Guest:
    id: str
    name: str
    consent_given: bool
    consent_at: Optional[datetime]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    descriptors: Optional[DescriptorSet] = None
    email: Optional[str] = None

    @property
    def identity(self) -> GuestIdentity:
        return GuestIdentity(self.id)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    LATE = "late"
    ABSENT = "absent"


@dataclass(frozen=True)
class AttendanceRecord:
    identity: Identity
    date: date
    check_in_time: Optional[datetime]
    check_out_time: Optional[datetime] = None
    status: AttendanceStatus = AttendanceStatus.PRESENT
    hours_worked: float = 0.0

    @property
    def checked_out(self) -> bool:
        return self.check_out_time is not None

    def close(self, check_out_time: datetime, hours_worked: float, status: AttendanceStatus) -> "AttendanceRecord":
        return replace(self, check_out_time=check_out_time, hours_worked=hours_worked, status=status)

    def to_dict(self) -> dict:
        kind, identity_id = self.identity.key
        return {
            "identity_kind": kind.value,
            "identity_id": identity_id,
            "date": self.date.isoformat(),
            "check_in_time": self.check_in_time.isoformat() if self.check_in_time else None,
            "check_out_time": self.check_out_time.isoformat() if self.check_out_time else None,
            "status": self.status.value,
            "hours_worked": self.hours_worked,
        }


@dataclass(frozen=True)
class CheckInToken:
    """Stored form of a guest bearer token: only the digest is kept."""
    token_hash: str
    guest_id: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now
