from datetime import datetime, timedelta

import pytest

from taskcadence.locks import acquire, generation_lock, purge_expired_locks, release, user_owner_key
from taskcadence.models import GenerationLock, Project


T0 = datetime(2024, 1, 1, 12, 0, 0)


def test_owner_keys():
    assert user_owner_key(7) == "user:7"
    assert user_owner_key(7, 3) == "user:7:template:3"


def test_second_holder_is_refused(session_factory):
    a = session_factory()
    b = session_factory()
    try:
        token = acquire(a, "user:1", 30)
        assert token is not None
        assert acquire(b, "user:1", 30) is None
        # Other owners are independent.
        assert acquire(b, "user:2", 30) is not None
    finally:
        a.close()
        b.close()


def test_release_requires_matching_token(db):
    token = acquire(db, "user:1", 30)

    assert release(db, "user:1", "not-the-token") is False
    assert acquire(db, "user:1", 30) is None

    assert release(db, "user:1", token) is True
    assert acquire(db, "user:1", 30) is not None


def test_expired_lock_can_be_taken_over(db):
    first = acquire(db, "user:1", 30, now=T0)
    assert first is not None

    assert acquire(db, "user:1", 30, now=T0 + timedelta(seconds=10)) is None

    second = acquire(db, "user:1", 30, now=T0 + timedelta(seconds=31))
    assert second is not None and second != first

    # The stale holder can no longer release it.
    assert release(db, "user:1", first) is False
    row = db.get(GenerationLock, "user:1")
    assert row.token == second


def test_purge_expired_locks(db):
    acquire(db, "user:1", 30, now=T0)
    acquire(db, "user:2", 300, now=T0)

    assert purge_expired_locks(db, now=T0 + timedelta(seconds=60)) == 1
    assert db.query(GenerationLock).count() == 1


def test_generation_lock_context(session_factory):
    a = session_factory()
    b = session_factory()
    try:
        with generation_lock(a, "user:5", 30) as token:
            assert token is not None
            with generation_lock(b, "user:5", 30) as other:
                assert other is None
        # Released on exit.
        assert a.query(GenerationLock).count() == 0
    finally:
        a.close()
        b.close()


def test_pending_changes_are_not_committed_with_the_lock(db, user):
    db.add(Project(user_id=user.id, name="Half-typed"))

    with pytest.raises(RuntimeError):
        acquire(db, "user:1", 30)
    db.rollback()

    assert db.query(Project).count() == 0
    assert db.query(GenerationLock).count() == 0
    assert acquire(db, "user:1", 30) is not None
