"""
Archival of retired access keys.

A key that reaches EXPIRED or DEPLETED, or that an admin deletes, is copied
into archived_keys and removed from access_keys. Archives are kept for
ARCHIVE_RETENTION_DAYS and then purged by cleanup_expired_archives().
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.access_key import AccessKey, KeyStatus
from app.models.archived_key import ArchivedKey, ArchiveReason
from app.models.server import Server
from app.services.outline_client import OutlineApiError, OutlineClient
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (KeyStatus.EXPIRED, KeyStatus.DEPLETED)


def snapshot_key(
    key: AccessKey,
    server: Server,
    reason: ArchiveReason,
    now: datetime,
    retention_days: Optional[int] = None,
) -> ArchivedKey:
    """Build the ArchivedKey row for a key (not added to the session)."""
    if retention_days is None:
        retention_days = settings.ARCHIVE_RETENTION_DAYS
    return ArchivedKey(
        original_key_id=key.id,
        remote_key_id=key.remote_key_id,
        name=key.name,
        email=key.email,
        notes=key.notes,
        server_name=server.name,
        server_location=server.location,
        access_url=key.access_url,
        data_limit_bytes=key.data_limit_bytes,
        used_bytes=key.used_bytes or 0,
        expiration_type=key.expiration_type,
        expires_at=key.expires_at,
        duration_days=key.duration_days,
        archive_reason=reason,
        original_status=key.status,
        first_used_at=key.first_used_at,
        last_used_at=key.last_used_at,
        key_created_at=key.created_at,
        archived_at=now,
        delete_after=now + timedelta(days=retention_days),
    )


def archive_key(
    db: Session,
    key: AccessKey,
    reason: ArchiveReason,
    client: Optional[OutlineClient] = None,
    now: Optional[datetime] = None,
) -> ArchivedKey:
    """
    Archive one key inside the caller's transaction.

    The remote delete is best effort: failures are logged and archival goes
    on. Nothing is committed here.
    """
    now = now or utcnow()
    server = key.server

    if client is not None and key.status != KeyStatus.DISABLED:
        try:
            client.delete_key(key.remote_key_id)
        except OutlineApiError as e:
            logger.warning(
                f"Could not delete remote key {key.remote_key_id} on server '{server.name}' "
                f"while archiving key {key.id}: {e}"
            )

    archived = snapshot_key(key, server, reason, now)
    db.add(archived)
    db.delete(key)
    logger.info(f"Archived key {key.id} ('{key.name}') from server '{server.name}' as {reason.value}")
    return archived


def archive_terminal_keys(
    db: Session,
    server: Server,
    client: Optional[OutlineClient],
    now: Optional[datetime] = None,
) -> int:
    """Archive every EXPIRED or DEPLETED key of a server. Returns the number archived."""
    now = now or utcnow()
    keys = (
        db.query(AccessKey)
        .filter(AccessKey.server_id == server.id, AccessKey.status.in_(TERMINAL_STATUSES))
        .all()
    )
    for key in keys:
        archive_key(db, key, ArchiveReason(key.status.value), client=client, now=now)
    return len(keys)


def cleanup_expired_archives(db: Session, now: Optional[datetime] = None) -> int:
    """Permanently delete archives past their retention. Idempotent."""
    now = now or utcnow()
    deleted = (
        db.query(ArchivedKey)
        .filter(ArchivedKey.delete_after <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info(f"Purged {deleted} archived key(s) past retention")
    return deleted


def list_archived_keys(
    db: Session,
    reason: Optional[ArchiveReason] = None,
    search: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
):
    query = db.query(ArchivedKey)
    if reason:
        query = query.filter(ArchivedKey.archive_reason == reason)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            ArchivedKey.name.ilike(pattern),
            ArchivedKey.email.ilike(pattern),
            ArchivedKey.server_name.ilike(pattern),
        ))
    total = query.count()
    items = query.order_by(ArchivedKey.archived_at.desc()).offset(offset).limit(limit).all()
    return items, total


def archive_stats(db: Session) -> Dict[str, object]:
    """Counts per archive reason and the total of archived usage."""
    rows = (
        db.query(ArchivedKey.archive_reason, func.count(ArchivedKey.id))
        .group_by(ArchivedKey.archive_reason)
        .all()
    )
    by_reason = {reason.value: 0 for reason in ArchiveReason}
    for reason, count in rows:
        by_reason[ArchiveReason(reason).value] = count

    total_bytes = db.query(func.coalesce(func.sum(ArchivedKey.used_bytes), 0)).scalar() or 0
    return {
        "total": sum(by_reason.values()),
        "by_reason": by_reason,
        "total_used_bytes": int(total_bytes),
    }


def delete_archived_key(db: Session, archived_id: int) -> bool:
    archived = db.query(ArchivedKey).filter(ArchivedKey.id == archived_id).first()
    if not archived:
        return False
    db.delete(archived)
    db.commit()
    return True


def run_archive_cleanup(session_factory: Callable[[], Session]) -> int:
    """Scheduler entry point: one session per run."""
    db = session_factory()
    try:
        return cleanup_expired_archives(db)
    finally:
        db.close()
