"""
Per-server reconciliation pass.

One pass pulls the key inventory and traffic counters from a remote server,
reconciles every local key of that server, drives automatic status
transitions, updates device estimates and finally archives keys that ended
in a terminal state. Everything the pass writes is committed together; on
any remote or database error the whole pass is rolled back and reported as
a failed result.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import atomic
from app.models.access_key import AccessKey, KeyStatus
from app.models.archived_key import ArchivedKey
from app.models.server import Server
from app.models.traffic_log import TrafficLog
from app.services.archive_service import archive_terminal_keys
from app.services.key_state_machine import evaluate_automatic
from app.services.outline_client import OutlineApiError, OutlineClient, RemoteAccessKey
from app.services.session_estimator import update_sessions
from app.services.usage_reconciler import CounterReading, reconcile_counter, unchanged_reading
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

# Keys the automatic pass looks at; DISABLED and terminal keys are skipped
RECONCILED_STATUSES = (KeyStatus.PENDING, KeyStatus.ACTIVE)


class ServerNotFoundError(Exception):
    """Raised when a server id does not exist."""

    def __init__(self, server_id: int):
        super().__init__(f"Server with id {server_id} not found")
        self.server_id = server_id


@dataclass
class ServerSyncResult:
    """Outcome of one server pass."""
    server_id: int
    server_name: str
    success: bool
    error: Optional[str] = None
    keys_synced: int = 0
    status_changes: int = 0
    counter_resets: int = 0
    missing_remote_keys: int = 0
    discovered_keys: int = 0
    archived: int = 0
    metrics_available: bool = False
    duration_ms: int = 0
    transitions: Dict[str, int] = field(default_factory=dict)


def _read_counter(
    key: AccessKey,
    remote_keys: Dict[str, RemoteAccessKey],
    metrics: Optional[Dict[str, int]],
) -> CounterReading:
    if key.remote_key_id not in remote_keys or metrics is None:
        return unchanged_reading(key.usage_offset, key.used_bytes)
    return reconcile_counter(metrics.get(key.remote_key_id), key.usage_offset, key.used_bytes)


def reconcile_key(
    db: Session,
    key: AccessKey,
    reading: CounterReading,
    now: datetime,
    remote_key: Optional[RemoteAccessKey] = None,
) -> Optional[KeyStatus]:
    """
    Apply one reading to a key. Returns the new status if a transition fired.

    Nothing is committed here.
    """
    previous_status = KeyStatus(key.status)
    patch = evaluate_automatic(key, reading.effective_bytes, now)

    patch.used_bytes = reading.effective_bytes
    if reading.usage_offset != (key.usage_offset or 0):
        patch.usage_offset = reading.usage_offset
    if remote_key is not None and remote_key.access_url and remote_key.access_url != key.access_url:
        patch.access_url = remote_key.access_url

    update_sessions(db, key, reading.activity_bytes, now, patch)

    if reading.activity_bytes >= settings.TRAFFIC_LOG_MIN_BYTES:
        db.add(TrafficLog(access_key_id=key.id, bytes_used=reading.activity_bytes, recorded_at=now))

    patch.apply_to(key)

    if reading.reset_detected:
        logger.info(f"Counter reset detected for key {key.id} ('{key.name}'), offset cleared")
    logger.debug(
        f"Key {key.id}: used={reading.effective_bytes} delta={reading.delta_bytes} "
        f"offset={reading.usage_offset}"
    )

    if key.status != previous_status:
        logger.info(f"Key {key.id} ('{key.name}') {previous_status.value} -> {KeyStatus(key.status).value}")
        return KeyStatus(key.status)
    return None


def discover_remote_keys(
    db: Session,
    server: Server,
    remote_keys: Dict[str, RemoteAccessKey],
    metrics: Optional[Dict[str, int]],
) -> int:
    """
    Import remote keys created outside keyfleet as ACTIVE keys.

    The current counter becomes used_bytes with a zero offset. Returns the
    number of keys imported. Nothing is committed here.
    """
    known = {
        remote_key_id
        for (remote_key_id,) in db.query(AccessKey.remote_key_id).filter(AccessKey.server_id == server.id)
    }
    # Archived keys whose best-effort remote delete failed stay archived
    known.update(
        remote_key_id
        for (remote_key_id,) in db.query(ArchivedKey.remote_key_id).filter(ArchivedKey.server_name == server.name)
    )
    imported = 0
    for remote_id, remote_key in remote_keys.items():
        if remote_id in known:
            continue
        db.add(AccessKey(
            server_id=server.id,
            remote_key_id=remote_id,
            name=remote_key.name or f"Key {remote_id}",
            access_url=remote_key.access_url,
            method=remote_key.method,
            status=KeyStatus.ACTIVE,
            used_bytes=max(int((metrics or {}).get(remote_id) or 0), 0),
            usage_offset=0,
            data_limit_bytes=remote_key.data_limit_bytes,
        ))
        imported += 1
        logger.info(f"Discovered remote key {remote_id} ('{remote_key.name}') on server '{server.name}'")
    return imported


def sync_server(
    db: Session,
    server: Server,
    client: OutlineClient,
    now: Optional[datetime] = None,
    discover: bool = False,
) -> ServerSyncResult:
    """
    Run one reconciliation pass for a server and commit it atomically.

    With discover=True the pass also refreshes the server's remote identity
    and imports remote keys that have no local row.
    """
    started = time.monotonic()
    now = now or utcnow()
    result = ServerSyncResult(server_id=server.id, server_name=server.name, success=False)

    try:
        with atomic(db):
            if discover:
                info = client.get_server_info()
                server.remote_server_id = info.server_id
                server.remote_version = info.version

            remote_keys = {remote.id: remote for remote in client.list_keys()}
            metrics = client.get_metrics()
            result.metrics_available = metrics is not None
            server.metrics_enabled = metrics is not None

            keys = (
                db.query(AccessKey)
                .filter(AccessKey.server_id == server.id, AccessKey.status.in_(RECONCILED_STATUSES))
                .all()
            )
            for key in keys:
                remote_key = remote_keys.get(key.remote_key_id)
                if remote_key is None:
                    result.missing_remote_keys += 1
                    logger.warning(
                        f"Key {key.id} ('{key.name}') has no remote counterpart "
                        f"{key.remote_key_id} on server '{server.name}'"
                    )

                reading = _read_counter(key, remote_keys, metrics)
                if reading.reset_detected:
                    result.counter_resets += 1

                new_status = reconcile_key(db, key, reading, now, remote_key)
                if new_status is not None:
                    result.status_changes += 1
                    result.transitions[new_status.value] = result.transitions.get(new_status.value, 0) + 1
                result.keys_synced += 1

            if discover:
                result.discovered_keys = discover_remote_keys(db, server, remote_keys, metrics)

            db.flush()
            result.archived = archive_terminal_keys(db, server, client, now)
            server.last_sync_at = now

        result.success = True
        logger.info(
            f"Synced server '{result.server_name}': {result.keys_synced} keys, "
            f"{result.status_changes} transitions, {result.archived} archived, "
            f"{result.discovered_keys} discovered"
        )
    except OutlineApiError as e:
        result.error = str(e)
        logger.error(f"Remote error while syncing server '{result.server_name}': {e}")
    except SQLAlchemyError as e:
        result.error = f"Database error: {e}"
        logger.error(f"Database error while syncing server '{result.server_name}': {e}", exc_info=True)

    result.duration_ms = int((time.monotonic() - started) * 1000)
    return result


def sync_server_by_id(
    session_factory: Callable[[], Session],
    client_factory: Callable[[Server], OutlineClient],
    server_id: int,
    discover: bool = False,
) -> ServerSyncResult:
    """
    Run a pass with a dedicated session.

    This is the unit of work handed to worker threads. The fleet sync never
    discovers keys; a single-server sync does.
    """
    db = session_factory()
    try:
        server = db.query(Server).filter(Server.id == server_id).first()
        if not server:
            raise ServerNotFoundError(server_id)
        try:
            client = client_factory(server)
        except OutlineApiError as e:
            return ServerSyncResult(server_id=server.id, server_name=server.name, success=False, error=str(e))
        return sync_server(db, server, client, discover=discover)
    finally:
        db.close()

