"""
Daily attendance state machine.

Per (identity, date): NoAttendance -> CheckedIn -> CheckedOut. A new date
starts over. Lateness is decided once, at check-in.
"""
import logging
from datetime import datetime, time
from typing import List, Optional, Union

from . import config
from .clock import SystemClock
from .domain import AttendanceRecord, AttendanceStatus, Identity
from .errors import AlreadyCheckedIn, AlreadyCheckedOut, DuplicateRecord, NoCheckIn
from .repository import Repository

logger = logging.getLogger(__name__)


def compute_hours(check_in_time: datetime, check_out_time: datetime) -> float:
    """Hours between two timestamps, rounded to 2 decimals."""
    seconds = (check_out_time - check_in_time).total_seconds()
    return round(max(seconds, 0.0) / 3600, 2)


class AttendanceStateMachine:

    def __init__(self, repository: Repository, clock=None,
                 late_cutoff: Union[time, str] = config.LATE_CUTOFF):
        self.repository = repository
        self.clock = clock or SystemClock()
        self.late_cutoff = config.parse_cutoff(late_cutoff) if isinstance(late_cutoff, str) else late_cutoff

    def status_for(self, now: datetime) -> AttendanceStatus:
        """``late`` strictly after the cutoff, ``present`` otherwise."""
        return AttendanceStatus.LATE if now.time() > self.late_cutoff else AttendanceStatus.PRESENT

    def check_in(self, identity: Identity, now: Optional[datetime] = None) -> AttendanceRecord:
        """
        Open today's record.

        Raises:
            AlreadyCheckedIn: a record already exists for this identity and date
        """
        now = now or self.clock.now()
        day = now.date()

        if self.repository.get_attendance(identity, day) is not None:
            raise AlreadyCheckedIn()

        record = AttendanceRecord(
            identity=identity,
            date=day,
            check_in_time=now,
            check_out_time=None,
            status=self.status_for(now),
            hours_worked=0.0,
        )
        try:
            # Insert-if-absent: the repository arbitrates racing check-ins.
            record = self.repository.create_attendance(record)
        except DuplicateRecord:
            raise AlreadyCheckedIn()

        logger.info("Check-in %s:%s on %s (%s)", identity.key[0].value, identity.key[1], day, record.status.value)
        return record

    def check_out(self, identity: Identity, now: Optional[datetime] = None) -> AttendanceRecord:
        """
        Close today's record and derive hours worked.

        Raises:
            NoCheckIn: no record for this identity today
            AlreadyCheckedOut: today's record is already closed
        """
        now = now or self.clock.now()
        day = now.date()

        existing = self.repository.get_attendance(identity, day)
        if existing is None:
            raise NoCheckIn()
        if existing.checked_out:
            raise AlreadyCheckedOut()

        check_out_time = max(now, existing.check_in_time)
        hours_worked = compute_hours(existing.check_in_time, check_out_time)
        # Check-out never re-evaluates lateness.
        status = AttendanceStatus.LATE if existing.status is AttendanceStatus.LATE else AttendanceStatus.PRESENT

        record = self.repository.complete_attendance(identity, day, check_out_time, hours_worked, status)
        if record is None:
            raise AlreadyCheckedOut()

        logger.info("Check-out %s:%s on %s after %.2fh", identity.key[0].value, identity.key[1], day, hours_worked)
        return record

    def today(self, identity: Identity, now: Optional[datetime] = None) -> Optional[AttendanceRecord]:
        now = now or self.clock.now()
        return self.repository.get_attendance(identity, now.date())

    def history(self, identity: Identity) -> List[AttendanceRecord]:
        return self.repository.list_attendance(identity)
