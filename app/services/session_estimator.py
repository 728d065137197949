"""
Device estimation from traffic deltas.

There is no per-device signal from the remote servers, so devices are
approximated by activity windows (ConnectionSession rows).
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.access_key import AccessKey
from app.models.connection_session import ConnectionSession
from app.services.key_state_machine import KeyPatch
from app.utils.time_utils import as_utc

logger = logging.getLogger(__name__)


def update_sessions(
    db: Session,
    key: AccessKey,
    delta_bytes: int,
    now: datetime,
    patch: Optional[KeyPatch] = None,
    noise_threshold: Optional[int] = None,
    inactivity_timeout: Optional[int] = None,
) -> KeyPatch:
    """
    Update connection sessions for one key and fill device counts into a patch.

    A delta above the noise threshold counts as activity: the most recent open
    session is extended, or a new one is opened. Without activity, sessions
    idle for longer than the inactivity timeout are closed. Afterwards the
    estimate is the number of open sessions and the peak never decreases.
    """
    if patch is None:
        patch = KeyPatch()
    if noise_threshold is None:
        noise_threshold = settings.TRAFFIC_NOISE_THRESHOLD_BYTES
    if inactivity_timeout is None:
        inactivity_timeout = settings.SESSION_INACTIVITY_TIMEOUT_SECONDS

    open_sessions = (
        db.query(ConnectionSession)
        .filter(ConnectionSession.access_key_id == key.id, ConnectionSession.is_active.is_(True))
        .order_by(ConnectionSession.started_at.desc())
        .all()
    )

    if delta_bytes > noise_threshold:
        if open_sessions:
            current = open_sessions[0]
            current.last_active_at = now
            current.bytes_used = (current.bytes_used or 0) + delta_bytes
        else:
            new_session = ConnectionSession(
                access_key_id=key.id,
                started_at=now,
                last_active_at=now,
                is_active=True,
                bytes_used=delta_bytes,
            )
            db.add(new_session)
            open_sessions = [new_session]
        patch.last_used_at = now
    else:
        cutoff = now - timedelta(seconds=inactivity_timeout)
        still_open = []
        for connection in open_sessions:
            if as_utc(connection.last_active_at) < cutoff:
                connection.is_active = False
                connection.ended_at = now
            else:
                still_open.append(connection)
        if len(still_open) != len(open_sessions):
            logger.debug(f"Closed {len(open_sessions) - len(still_open)} idle session(s) for key {key.id}")
        open_sessions = still_open

    estimated = len(open_sessions)
    patch.estimated_devices = estimated
    patch.peak_devices = max(key.peak_devices or 0, estimated)
    return patch


def close_all_sessions(db: Session, key: AccessKey, now: datetime) -> int:
    """Close every open session of a key. Returns the number closed."""
    open_sessions = (
        db.query(ConnectionSession)
        .filter(ConnectionSession.access_key_id == key.id, ConnectionSession.is_active.is_(True))
        .all()
    )
    for connection in open_sessions:
        connection.is_active = False
        connection.ended_at = now
    return len(open_sessions)
