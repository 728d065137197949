"""
Database-backed single-flight lock for fleet-wide operations.

The lock is one row in sync_locks. Acquisition is a conditional UPDATE so
that only one caller can flip a free (or stale) row to its own holder id,
across processes and workers sharing the database. A holder that crashes
stops heartbeating and its lock becomes stale after SYNC_LOCK_MAX_AGE_SECONDS.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.sync_lock import SyncLock
from app.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

FLEET_SYNC_LOCK = "fleet_sync"


class SyncAlreadyRunningError(Exception):
    """Raised when the lock is held by another live holder."""

    def __init__(self, holder_id: Optional[str], held_for_seconds: int):
        super().__init__(f"Sync already running (holder {holder_id}, held for {held_for_seconds}s)")
        self.holder_id = holder_id
        self.held_for_seconds = held_for_seconds

    @property
    def retry_after_seconds(self) -> int:
        """Seconds until the lock would be considered stale, at least 1."""
        return max(settings.SYNC_LOCK_MAX_AGE_SECONDS - self.held_for_seconds, 1)


@dataclass
class LockStatus:
    is_locked: bool
    holder_id: Optional[str] = None
    locked_for_seconds: Optional[int] = None


def _held_for(lock: Optional[SyncLock], now: datetime) -> int:
    if lock is None or lock.acquired_at is None:
        return 0
    return max(int((now - as_utc(lock.acquired_at)).total_seconds()), 0)


def _is_live(lock: Optional[SyncLock], now: datetime, max_age: int) -> bool:
    if lock is None or lock.holder_id is None or lock.heartbeat_at is None:
        return False
    return as_utc(lock.heartbeat_at) >= now - timedelta(seconds=max_age)


def acquire_lock(
    db: Session,
    name: str = FLEET_SYNC_LOCK,
    holder_id: Optional[str] = None,
    max_age_seconds: Optional[int] = None,
) -> str:
    """
    Take the lock or raise SyncAlreadyRunningError.

    Returns the holder id to pass to heartbeat_lock() and release_lock().
    """
    holder_id = holder_id or uuid.uuid4().hex
    max_age = max_age_seconds if max_age_seconds is not None else settings.SYNC_LOCK_MAX_AGE_SECONDS
    now = utcnow()
    stale_before = now - timedelta(seconds=max_age)

    result = db.execute(
        update(SyncLock)
        .where(SyncLock.name == name)
        .where(or_(SyncLock.holder_id.is_(None), SyncLock.heartbeat_at < stale_before))
        .values(holder_id=holder_id, acquired_at=now, heartbeat_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.commit()
        logger.info(f"Acquired lock '{name}' as {holder_id}")
        return holder_id
    db.rollback()

    existing = db.get(SyncLock, name, populate_existing=True)
    if existing is None:
        # First use of this lock name
        db.add(SyncLock(name=name, holder_id=holder_id, acquired_at=now, heartbeat_at=now))
        try:
            db.commit()
            logger.info(f"Acquired lock '{name}' as {holder_id}")
            return holder_id
        except IntegrityError:
            db.rollback()
            existing = db.get(SyncLock, name, populate_existing=True)

    raise SyncAlreadyRunningError(
        existing.holder_id if existing else None,
        _held_for(existing, now),
    )


def heartbeat_lock(db: Session, holder_id: str, name: str = FLEET_SYNC_LOCK) -> bool:
    """Refresh heartbeat_at. Returns False if the lock is no longer ours."""
    result = db.execute(
        update(SyncLock)
        .where(SyncLock.name == name, SyncLock.holder_id == holder_id)
        .values(heartbeat_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.warning(f"Lock '{name}' is no longer held by {holder_id}")
        return False
    return True


def release_lock(db: Session, holder_id: str, name: str = FLEET_SYNC_LOCK) -> bool:
    """Release the lock if it is still held by holder_id."""
    result = db.execute(
        update(SyncLock)
        .where(SyncLock.name == name, SyncLock.holder_id == holder_id)
        .values(holder_id=None, acquired_at=None, heartbeat_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    released = result.rowcount == 1
    if released:
        logger.info(f"Released lock '{name}' held by {holder_id}")
    else:
        logger.warning(f"Lock '{name}' was not held by {holder_id} at release")
    return released


def get_lock_status(
    db: Session,
    name: str = FLEET_SYNC_LOCK,
    max_age_seconds: Optional[int] = None,
) -> LockStatus:
    """Current lock state. A stale lock reports as unlocked."""
    max_age = max_age_seconds if max_age_seconds is not None else settings.SYNC_LOCK_MAX_AGE_SECONDS
    now = utcnow()
    lock = db.get(SyncLock, name, populate_existing=True)
    if not _is_live(lock, now, max_age):
        return LockStatus(is_locked=False)
    return LockStatus(is_locked=True, holder_id=lock.holder_id, locked_for_seconds=_held_for(lock, now))
