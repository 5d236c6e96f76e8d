from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .models import GenerationLock
from .utils.time_utils import now_utc


logger = logging.getLogger("taskcadence.locks")


def user_owner_key(user_id: int, template_id: int | None = None) -> str:
    key = f"user:{int(user_id)}"
    if template_id is not None:
        key += f":template:{int(template_id)}"
    return key


def _insert_for(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Generation locks are not supported on dialect '{name}'")


def _refuse_pending(db: Session, owner_key: str) -> None:
    # Lock writes commit `db`; unrelated pending work must not ride along.
    if db.new or db.dirty or db.deleted:
        raise RuntimeError(f"Session has uncommitted changes; commit or roll back before locking {owner_key}")


def acquire(db: Session, owner_key: str, ttl_seconds: int, *, now: Optional[datetime] = None) -> Optional[str]:
    """Try to take the lock for `owner_key`. Returns the holder token, or None when busy.

    A single INSERT .. ON CONFLICT DO UPDATE writes the row when it is absent or
    expired; the token read back tells us whether our write won.

    The lock row is committed on `db` itself, so other sessions see it at once.
    Raises RuntimeError if `db` holds pending ORM changes rather than committing
    them along with the lock. Work the caller already flushed is committed.
    """
    _refuse_pending(db, owner_key)
    when = (now or now_utc()).replace(tzinfo=None)
    token = secrets.token_hex(16)
    expires = when + timedelta(seconds=int(ttl_seconds))

    ins = _insert_for(db)(GenerationLock).values(
        owner_key=owner_key,
        token=token,
        acquired_at=when,
        expires_at=expires,
    )
    stmt = ins.on_conflict_do_update(
        index_elements=[GenerationLock.owner_key],
        set_={
            "token": ins.excluded.token,
            "acquired_at": ins.excluded.acquired_at,
            "expires_at": ins.excluded.expires_at,
        },
        where=GenerationLock.expires_at < when,
    )

    db.execute(stmt)
    held = db.execute(select(GenerationLock.token).where(GenerationLock.owner_key == owner_key)).scalar_one_or_none()
    db.commit()

    if held != token:
        logger.debug("Lock %s is busy", owner_key)
        return None
    logger.debug("Lock %s acquired (ttl=%ss)", owner_key, ttl_seconds)
    return token


def release(db: Session, owner_key: str, token: str) -> bool:
    """Delete the lock row only if `token` still holds it. Commits `db`, like `acquire`."""
    _refuse_pending(db, owner_key)
    res = db.execute(
        delete(GenerationLock)
        .where(GenerationLock.owner_key == owner_key)
        .where(GenerationLock.token == token)
    )
    db.commit()
    released = bool(res.rowcount)
    if not released:
        logger.warning("Lock %s was not held by this caller (expired and taken over?)", owner_key)
    return released


@contextmanager
def generation_lock(db: Session, owner_key: str, ttl_seconds: int) -> Iterator[Optional[str]]:
    """Yield the token, or None when another holder is active.

    Work the body did not commit is rolled back before the lock is released.
    """
    token = acquire(db, owner_key, ttl_seconds)
    try:
        yield token
    finally:
        if token is not None:
            try:
                db.rollback()
                release(db, owner_key, token)
            except Exception:
                # The row expires on its own.
                logger.exception("Failed to release lock %s", owner_key)


def purge_expired_locks(db: Session, *, now: Optional[datetime] = None) -> int:
    when = (now or now_utc()).replace(tzinfo=None)
    res = db.execute(delete(GenerationLock).where(GenerationLock.expires_at < when))
    db.commit()
    return int(res.rowcount or 0)
