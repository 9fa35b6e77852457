"""
SQLAlchemy models for the attendance system.
"""
from sqlalchemy import Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, LargeBinary, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class User(Base):
    """Registered person with an enrolled descriptor set."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    name = Column(String, nullable=False, index=True)
    identifier = Column(String, unique=True, nullable=False, index=True)  # e.g., employee ID
    descriptors = Column(LargeBinary, nullable=True)  # float32 matrix as bytes
    descriptor_dim = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False)


class Guest(Base):
    """Consent-gated visitor; deleted by cleanup once expires_at has passed."""
    __tablename__ = "guests"

    id = Column(String(36), primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, index=True)
    consent_given = Column(Boolean, default=False, nullable=False)
    consent_at = Column(DateTime, nullable=True)
    descriptors = Column(LargeBinary, nullable=True)
    descriptor_dim = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


class Attendance(Base):
    """One row per identity per calendar date."""
    __tablename__ = "attendance"
    __table_args__ = (
        UniqueConstraint("identity_kind", "identity_id", "date", name="uq_attendance_identity_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    identity_kind = Column(String(8), nullable=False)  # "user" or "guest"
    identity_id = Column(String(36), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    check_in_time = Column(DateTime, nullable=True)
    check_out_time = Column(DateTime, nullable=True)
    status = Column(String(8), nullable=False, default="present")
    hours_worked = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False)


class CheckInToken(Base):
    """Guest bearer token, stored as a SHA-256 digest."""
    __tablename__ = "checkin_tokens"

    token_hash = Column(String(64), primary_key=True)
    guest_id = Column(String(36), ForeignKey("guests.id", ondelete="CASCADE"), nullable=False, index=True)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
