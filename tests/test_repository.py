import threading
from datetime import date, datetime, timedelta

import numpy as np
import pytest

from faceattend.attendance import AttendanceStateMachine
from faceattend.database import init_db, make_engine, make_session_factory
from faceattend.domain import (
    AttendanceRecord,
    AttendanceStatus,
    DescriptorSet,
    Guest,
    GuestIdentity,
    RegisteredUser,
    UserRecord,
)
from faceattend.errors import (
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    DependencyUnavailable,
    DuplicateRecord,
    UnknownIdentity,
)
from faceattend.repository import InMemoryRepository, KeyedLock
from faceattend.sql_repository import SqlRepository
from tests.conftest import make_descriptor

CREATED = datetime(2026, 10, 19, 8, 0)
DAY = date(2026, 10, 19)


def make_user(user_id="u-1", identifier="EMP-001"):
    return UserRecord(id=user_id, name="Ada", identifier=identifier, created_at=CREATED)


def test_descriptor_set_round_trips_through_storage(sql_repository):
    sql_repository.add_user(make_user())
    stored = DescriptorSet([make_descriptor(i) for i in range(5)])

    sql_repository.save_descriptor_set(RegisteredUser("u-1"), stored)
    loaded = sql_repository.get_descriptor_set(RegisteredUser("u-1"))

    assert len(loaded) == 5
    assert loaded.dimension == stored.dimension
    assert np.allclose(loaded.vectors, stored.vectors, atol=1e-6)
    assert sql_repository.get_user("u-1").descriptors is not None


def test_user_without_enrollment_has_no_descriptors(any_repository):
    any_repository.add_user(make_user())
    assert not any_repository.get_descriptor_set(RegisteredUser("u-1"))
    assert any_repository.get_descriptor_set(RegisteredUser("missing")) is None


def test_saving_descriptors_for_unknown_user(any_repository):
    with pytest.raises(UnknownIdentity):
        any_repository.save_descriptor_set(RegisteredUser("ghost"), DescriptorSet([make_descriptor(1)]))


def test_duplicate_identifier_is_rejected(any_repository):
    any_repository.add_user(make_user())
    with pytest.raises(DuplicateRecord):
        any_repository.add_user(make_user(user_id="u-2"))


def test_duplicate_attendance_is_rejected(any_repository):
    record = AttendanceRecord(RegisteredUser("u-1"), DAY, CREATED)
    any_repository.create_attendance(record)
    with pytest.raises(DuplicateRecord):
        any_repository.create_attendance(record)


def test_complete_attendance_only_once(any_repository):
    identity = RegisteredUser("u-1")
    any_repository.create_attendance(AttendanceRecord(identity, DAY, CREATED, status=AttendanceStatus.LATE))
    out = CREATED + timedelta(hours=8)

    closed = any_repository.complete_attendance(identity, DAY, out, 8.0, AttendanceStatus.LATE)
    assert closed.check_out_time == out
    assert closed.hours_worked == 8.0
    assert closed.status is AttendanceStatus.LATE

    assert any_repository.complete_attendance(identity, DAY, out + timedelta(hours=1), 9.0,
                                              AttendanceStatus.LATE) is None
    assert any_repository.get_attendance(identity, DAY).hours_worked == 8.0


def test_complete_missing_attendance(any_repository):
    assert any_repository.complete_attendance(RegisteredUser("u-1"), DAY, CREATED, 0.0,
                                              AttendanceStatus.PRESENT) is None


def test_find_guest_by_email_ignores_case(any_repository):
    guest = Guest(
        id="g-1",
        name="Visitor",
        email="Visitor@Example.com",
        consent_given=True,
        consent_at=CREATED,
        created_at=CREATED,
        last_activity_at=CREATED,
        expires_at=CREATED + timedelta(days=7),
        descriptors=DescriptorSet([make_descriptor(3)]),
    )
    any_repository.add_guest(guest)

    found = any_repository.find_guest_by_email("visitor@example.com")
    assert found.id == "g-1"
    assert len(found.descriptors) == 1
    assert any_repository.find_guest_by_email("other@example.com") is None


def test_touch_guest(any_repository):
    guest = Guest("g-1", "Visitor", True, CREATED, CREATED, CREATED, CREATED + timedelta(days=7))
    any_repository.add_guest(guest)
    later = CREATED + timedelta(days=2)

    touched = any_repository.touch_guest("g-1", later, later + timedelta(days=7))

    assert touched.last_activity_at == later
    assert any_repository.get_guest("g-1").expires_at == later + timedelta(days=7)
    assert any_repository.touch_guest("missing", later, later) is None


def test_delete_missing_guest(any_repository):
    assert not any_repository.delete_guest("missing")


def test_attendance_is_scoped_by_identity_kind(any_repository):
    any_repository.create_attendance(AttendanceRecord(RegisteredUser("same"), DAY, CREATED))
    any_repository.create_attendance(AttendanceRecord(GuestIdentity("same"), DAY, CREATED))
    assert any_repository.delete_guest("same") is False
    assert len(any_repository.list_attendance(RegisteredUser("same"))) == 1
    assert len(any_repository.list_attendance(GuestIdentity("same"))) == 1


def test_attendance_on_one_day_earliest_first(any_repository):
    any_repository.create_attendance(AttendanceRecord(RegisteredUser("late"), DAY, CREATED + timedelta(hours=1)))
    any_repository.create_attendance(AttendanceRecord(GuestIdentity("early"), DAY, CREATED))
    any_repository.create_attendance(AttendanceRecord(RegisteredUser("late"), DAY + timedelta(days=1), CREATED))

    records = any_repository.list_attendance_on(DAY)
    assert [r.identity for r in records] == [GuestIdentity("early"), RegisteredUser("late")]
    assert any_repository.list_attendance_on(DAY - timedelta(days=1)) == []


def test_keyed_lock_releases_entries():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    assert len(locks) == 0


def test_in_memory_repository_does_not_leak_locks():
    repository = InMemoryRepository()
    repository.create_attendance(AttendanceRecord(RegisteredUser("u-1"), DAY, CREATED))
    repository.complete_attendance(RegisteredUser("u-1"), DAY, CREATED, 0.0, AttendanceStatus.PRESENT)
    assert len(repository._locks) == 0


def test_same_key_waits_other_keys_proceed():
    repository = InMemoryRepository()
    held = repository._attendance_key(RegisteredUser("u-1"), DAY)
    other_done = threading.Event()
    same_done = threading.Event()

    def other_key():
        repository.create_attendance(AttendanceRecord(RegisteredUser("u-2"), DAY, CREATED))
        other_done.set()

    def same_key():
        repository.create_attendance(AttendanceRecord(RegisteredUser("u-1"), DAY, CREATED))
        same_done.set()

    with repository._locks.hold(held):
        threading.Thread(target=other_key).start()
        assert other_done.wait(1)
        assert repository.get_attendance(RegisteredUser("u-2"), DAY) is not None

        threading.Thread(target=same_key).start()
        assert not same_done.wait(0.2)

    assert same_done.wait(1)
    assert len(repository._locks) == 0


@pytest.fixture
def file_repository(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'attendance.db'}")
    init_db(engine)
    yield SqlRepository(make_session_factory(engine))
    engine.dispose()


def race(count, attempt):
    barrier = threading.Barrier(count)
    outcomes = []

    def run():
        barrier.wait()
        try:
            outcomes.append(attempt())
        except (AlreadyCheckedIn, AlreadyCheckedOut, DuplicateRecord) as e:
            outcomes.append(e)

    threads = [threading.Thread(target=run) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return outcomes


def test_sql_unique_constraint_arbitrates_racing_inserts(file_repository):
    record = AttendanceRecord(RegisteredUser("u-1"), DAY, CREATED)
    outcomes = race(6, lambda: file_repository.create_attendance(record))

    assert sum(isinstance(o, AttendanceRecord) for o in outcomes) == 1
    assert sum(isinstance(o, DuplicateRecord) for o in outcomes) == 5
    assert len(file_repository.list_attendance(RegisteredUser("u-1"))) == 1


def test_sql_racing_check_ins_and_check_outs(file_repository):
    machine = AttendanceStateMachine(file_repository)
    user = RegisteredUser("u-1")

    outcomes = race(6, lambda: machine.check_in(user, CREATED))
    assert sum(isinstance(o, AttendanceRecord) for o in outcomes) == 1
    assert sum(isinstance(o, AlreadyCheckedIn) for o in outcomes) == 5

    outcomes = race(6, lambda: machine.check_out(user, CREATED + timedelta(hours=8)))
    assert sum(isinstance(o, AttendanceRecord) for o in outcomes) == 1
    assert sum(isinstance(o, AlreadyCheckedOut) for o in outcomes) == 5
    assert file_repository.get_attendance(user, DAY).hours_worked == 8.0


def test_unreachable_database_is_dependency_unavailable(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'missing' / 'attendance.db'}")
    repository = SqlRepository(make_session_factory(engine))

    with pytest.raises(DependencyUnavailable):
        repository.get_user("u-1")
    with pytest.raises(DependencyUnavailable):
        repository.create_attendance(AttendanceRecord(RegisteredUser("u-1"), DAY, CREATED))
    engine.dispose()
