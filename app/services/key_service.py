"""
Admin operations on access keys.

Every operation that touches a remote server does the remote call first and
only persists local state once the remote side succeeded. When a later step
fails, the remote object created earlier is removed again on a best-effort
basis.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import atomic
from app.models.access_key import AccessKey, ExpirationType, KeyStatus
from app.models.archived_key import ArchiveReason
from app.models.connection_session import ConnectionSession
from app.models.server import Server
from app.schemas.access_key import KeyCreateRequest
from app.services.archive_service import archive_key
from app.services.key_state_machine import (
    InvalidTransitionError,
    KeyPatch,
    Trigger,
    calculate_expiration,
    enable_trigger_for,
    transition_for,
)
from app.services.outline_client import OutlineApiError, OutlineClient
from app.services.session_estimator import close_all_sessions
from app.services.usage_reconciler import remote_limit_for
from app.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class KeyNotFoundError(Exception):
    """Raised when a key id does not exist."""

    def __init__(self, key_id: int):
        super().__init__(f"Access key with id {key_id} not found")
        self.key_id = key_id


class KeyOperationError(Exception):
    """Raised when an admin operation could not be completed on the remote server."""


@dataclass
class BulkResult:
    success: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


def get_key(db: Session, key_id: int) -> AccessKey:
    key = db.query(AccessKey).filter(AccessKey.id == key_id).first()
    if not key:
        raise KeyNotFoundError(key_id)
    return key


def _discard_remote_key(client: OutlineClient, remote_key_id: str) -> None:
    try:
        client.delete_key(remote_key_id)
    except OutlineApiError as e:
        logger.error(f"Could not remove remote key {remote_key_id} after a failed operation: {e}")


def create_key(
    db: Session,
    server: Server,
    client: OutlineClient,
    data: KeyCreateRequest,
    now: Optional[datetime] = None,
) -> AccessKey:
    """Issue a key on the remote server and persist it."""
    now = now or utcnow()
    try:
        remote = client.create_key(data.name, data.method)
    except OutlineApiError as e:
        raise KeyOperationError(f"Failed to create key on server '{server.name}': {e}") from e

    if data.data_limit_bytes is not None:
        try:
            client.set_data_limit(remote.id, data.data_limit_bytes)
        except OutlineApiError as e:
            _discard_remote_key(client, remote.id)
            raise KeyOperationError(f"Failed to set data limit for new key: {e}") from e

    expires_at, status = calculate_expiration(data.expiration_type, now, data.expires_at, data.duration_days)
    key = AccessKey(
        server_id=server.id,
        remote_key_id=remote.id,
        name=data.name,
        email=data.email,
        notes=data.notes,
        access_url=remote.access_url,
        method=remote.method or data.method,
        status=status,
        used_bytes=0,
        usage_offset=0,
        data_limit_bytes=data.data_limit_bytes,
        data_limit_reset_strategy=data.data_limit_reset_strategy,
        expiration_type=data.expiration_type,
        expires_at=expires_at,
        duration_days=data.duration_days,
        estimated_devices=0,
        peak_devices=0,
    )
    try:
        with atomic(db):
            db.add(key)
    except SQLAlchemyError:
        _discard_remote_key(client, remote.id)
        raise
    db.refresh(key)
    logger.info(f"Created key {key.id} ('{key.name}') on server '{server.name}' as {status.value}")
    return key


def _expiration_patch(key: AccessKey, changes: Dict[str, Any], patch: KeyPatch) -> None:
    new_type = changes.get("expiration_type") or key.expiration_type
    duration_days = changes.get("duration_days", key.duration_days)
    expires_at = changes.get("expires_at", key.expires_at)

    patch.expiration_type = new_type
    patch.duration_days = duration_days

    if new_type == ExpirationType.START_ON_FIRST_USE:
        first_used_at = as_utc(key.first_used_at)
        if first_used_at is None:
            patch.expires_at = None
            if key.status == KeyStatus.ACTIVE:
                patch.status = KeyStatus.PENDING
        else:
            patch.expires_at = first_used_at + timedelta(days=duration_days) if duration_days else None
        return

    if new_type == ExpirationType.DURATION_FROM_CREATION:
        created_at = as_utc(key.created_at) or utcnow()
        patch.expires_at = created_at + timedelta(days=duration_days) if duration_days else None
    elif new_type == ExpirationType.FIXED_DATE:
        patch.expires_at = as_utc(expires_at)
    else:
        patch.expires_at = None

    if key.status == KeyStatus.PENDING:
        patch.status = KeyStatus.ACTIVE


def update_key(db: Session, key: AccessKey, client: OutlineClient, changes: Dict[str, Any]) -> AccessKey:
    """
    Apply an admin update.

    changes holds only the fields the caller actually sent, so an explicit
    None (e.g. removing the data limit) is distinguishable from absence.
    """
    patch = KeyPatch()
    live_remote = key.status != KeyStatus.DISABLED

    for name in ("email", "notes", "data_limit_reset_strategy"):
        if name in changes and (name != "data_limit_reset_strategy" or changes[name] is not None):
            setattr(patch, name, changes[name])

    try:
        if "name" in changes and changes["name"] and changes["name"] != key.name:
            if live_remote:
                client.rename_key(key.remote_key_id, changes["name"])
            patch.name = changes["name"]

        if "data_limit_bytes" in changes and changes["data_limit_bytes"] != key.data_limit_bytes:
            new_limit = changes["data_limit_bytes"]
            if live_remote:
                remote_limit = remote_limit_for(new_limit, key.usage_offset)
                if remote_limit is None:
                    client.remove_data_limit(key.remote_key_id)
                else:
                    client.set_data_limit(key.remote_key_id, remote_limit)
            patch.data_limit_bytes = new_limit
    except OutlineApiError as e:
        raise KeyOperationError(f"Failed to update key {key.id} on remote server: {e}") from e

    if {"expiration_type", "expires_at", "duration_days"} & set(changes):
        _expiration_patch(key, changes, patch)

    with atomic(db):
        applied = patch.apply_to(key)
    db.refresh(key)
    if applied:
        logger.info(f"Updated key {key.id}: {', '.join(sorted(applied))}")
    return key


def disable_key(db: Session, key: AccessKey, client: OutlineClient, now: Optional[datetime] = None) -> AccessKey:
    """
    Disable a key by deleting its remote counterpart.

    If the remote delete fails the key is left unchanged.
    """
    now = now or utcnow()
    transition = transition_for(key.status, Trigger.ADMIN_DISABLE)

    try:
        client.delete_key(key.remote_key_id)
    except OutlineApiError as e:
        raise KeyOperationError(f"Failed to delete remote key for key {key.id}: {e}") from e

    patch = KeyPatch(
        status=transition.next_status,
        disabled_at=now,
        disabled_remote_key_id=key.remote_key_id,
        estimated_devices=0,
        side_effects=transition.side_effects,
    )
    with atomic(db):
        patch.apply_to(key)
        closed = close_all_sessions(db, key, now)
    db.refresh(key)
    logger.info(f"Disabled key {key.id} ('{key.name}'), closed {closed} session(s)")
    return key


def enable_key(db: Session, key: AccessKey, client: OutlineClient, now: Optional[datetime] = None) -> AccessKey:
    """
    Re-enable a disabled key by recreating it remotely.

    The new remote counter starts at zero, so the offset becomes -used_bytes
    and local usage continues from the stored total.
    """
    transition = transition_for(key.status, enable_trigger_for(key))

    try:
        remote = client.create_key(key.name, key.method)
    except OutlineApiError as e:
        raise KeyOperationError(f"Failed to recreate remote key for key {key.id}: {e}") from e

    offset = -(key.used_bytes or 0)
    remote_limit = remote_limit_for(key.data_limit_bytes, offset)
    if remote_limit is not None:
        try:
            client.set_data_limit(remote.id, remote_limit)
        except OutlineApiError as e:
            _discard_remote_key(client, remote.id)
            raise KeyOperationError(f"Failed to reapply data limit for key {key.id}: {e}") from e

    patch = KeyPatch(
        status=transition.next_status,
        remote_key_id=remote.id,
        access_url=remote.access_url,
        method=remote.method or key.method,
        usage_offset=offset,
        disabled_at=None,
        disabled_remote_key_id=None,
        side_effects=transition.side_effects,
    )
    try:
        with atomic(db):
            patch.apply_to(key)
    except SQLAlchemyError:
        _discard_remote_key(client, remote.id)
        raise
    db.refresh(key)
    logger.info(f"Enabled key {key.id} ('{key.name}') as {transition.next_status.value} with remote key {remote.id}")
    return key


def delete_key(db: Session, key: AccessKey, client: Optional[OutlineClient], now: Optional[datetime] = None):
    """Archive a key and remove it. Disabled keys keep DISABLED as their archive reason."""
    reason = ArchiveReason.DISABLED if key.status == KeyStatus.DISABLED else ArchiveReason.DELETED
    with atomic(db):
        archived = archive_key(db, key, reason, client=client, now=now)
    return archived


def bulk_operation(
    db: Session,
    key_ids: Iterable[int],
    client_factory: Callable[[Server], OutlineClient],
    operation: Callable[[Session, AccessKey, OutlineClient], Any],
) -> BulkResult:
    """Run an operation per key, isolating failures."""
    result = BulkResult()
    for key_id in key_ids:
        try:
            key = get_key(db, key_id)
            operation(db, key, client_factory(key.server))
            result.success += 1
        except (KeyNotFoundError, KeyOperationError, InvalidTransitionError, OutlineApiError, SQLAlchemyError) as e:
            db.rollback()
            result.failed += 1
            result.errors.append({"key_id": key_id, "error": str(e)})
            logger.warning(f"Bulk operation failed for key {key_id}: {e}")
    return result


def list_keys(
    db: Session,
    server_id: Optional[int] = None,
    status: Optional[KeyStatus] = None,
    search: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
):
    query = db.query(AccessKey)
    if server_id is not None:
        query = query.filter(AccessKey.server_id == server_id)
    if status:
        query = query.filter(AccessKey.status == status)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(AccessKey.name.ilike(pattern), AccessKey.email.ilike(pattern)))
    total = query.count()
    items = query.order_by(AccessKey.created_at.desc(), AccessKey.id.desc()).offset(offset).limit(limit).all()
    return items, total


def key_stats(db: Session, server_id: Optional[int] = None) -> Dict[str, Any]:
    """Counts per status and the total of used bytes."""
    count_query = db.query(AccessKey.status, func.count(AccessKey.id))
    sum_query = db.query(func.coalesce(func.sum(AccessKey.used_bytes), 0))
    if server_id is not None:
        count_query = count_query.filter(AccessKey.server_id == server_id)
        sum_query = sum_query.filter(AccessKey.server_id == server_id)

    by_status = {status.value: 0 for status in KeyStatus}
    for status, count in count_query.group_by(AccessKey.status).all():
        by_status[KeyStatus(status).value] = count

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "total_used_bytes": int(sum_query.scalar() or 0),
    }


def key_sessions(db: Session, key_id: int, limit: int = 50) -> List[ConnectionSession]:
    return (
        db.query(ConnectionSession)
        .filter(ConnectionSession.access_key_id == key_id)
        .order_by(ConnectionSession.started_at.desc())
        .limit(limit)
        .all()
    )
