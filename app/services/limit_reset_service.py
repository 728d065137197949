"""
Periodic data-limit reset.

Keys with a DAILY, WEEKLY or MONTHLY reset strategy start counting from zero
once their period has elapsed. The remote counter itself cannot be reset, so
the reset moves the usage offset to the current raw counter and raises the
remote limit by the same amount.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import atomic
from app.models.access_key import AccessKey, DataLimitResetStrategy, KeyStatus
from app.models.server import Server
from app.services.fleet_sync import FleetLock, run_in_thread
from app.services.outline_client import OutlineApiError, OutlineClient
from app.services.usage_reconciler import remote_limit_for
from app.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

RESET_PERIODS = {
    DataLimitResetStrategy.DAILY: timedelta(days=1),
    DataLimitResetStrategy.WEEKLY: timedelta(days=7),
    DataLimitResetStrategy.MONTHLY: timedelta(days=30),
}


@dataclass
class LimitResetResult:
    servers_checked: int = 0
    keys_reset: int = 0
    servers_failed: int = 0


def is_reset_due(key: AccessKey, now: datetime) -> bool:
    period = RESET_PERIODS.get(key.data_limit_reset_strategy)
    if period is None:
        return False
    last_reset = as_utc(key.last_data_limit_reset_at) or as_utc(key.created_at)
    if last_reset is None:
        return True
    return now - last_reset >= period


def reset_server_limits(db: Session, server: Server, client: OutlineClient, now: Optional[datetime] = None) -> int:
    """Reset every due key of one server. Returns the number of keys reset."""
    now = now or utcnow()
    keys = (
        db.query(AccessKey)
        .filter(
            AccessKey.server_id == server.id,
            AccessKey.data_limit_reset_strategy != DataLimitResetStrategy.NEVER,
            AccessKey.status.in_((KeyStatus.PENDING, KeyStatus.ACTIVE)),
        )
        .all()
    )
    due = [key for key in keys if is_reset_due(key, now)]
    if not due:
        return 0

    metrics = client.get_metrics()
    if metrics is None:
        logger.warning(f"Server '{server.name}' exposes no metrics, skipping limit reset for {len(due)} key(s)")
        return 0

    with atomic(db):
        for key in due:
            raw = max(int(metrics.get(key.remote_key_id, 0)), 0)
            key.usage_offset = raw
            key.used_bytes = 0
            key.last_data_limit_reset_at = now
            logger.info(f"Reset data usage for key {key.id} ('{key.name}', {key.data_limit_reset_strategy.value})")

    for key in due:
        limit = remote_limit_for(key.data_limit_bytes, key.usage_offset)
        if limit is None:
            continue
        try:
            client.set_data_limit(key.remote_key_id, limit)
        except OutlineApiError as e:
            logger.error(f"Failed to update remote limit for key {key.id} after reset: {e}")
    return len(due)


def reset_due_limits(
    session_factory: Callable[[], Session],
    client_factory: Callable[[Server], OutlineClient],
) -> LimitResetResult:
    """Run the reset over all active servers, isolating failures per server."""
    result = LimitResetResult()
    db = session_factory()
    try:
        servers = db.query(Server).filter(Server.is_active.is_(True)).order_by(Server.id).all()
        for server in servers:
            result.servers_checked += 1
            try:
                result.keys_reset += reset_server_limits(db, server, client_factory(server))
            except (OutlineApiError, SQLAlchemyError) as e:
                db.rollback()
                result.servers_failed += 1
                logger.error(f"Limit reset failed for server '{server.name}': {e}")
    finally:
        db.close()
    return result


async def run_limit_reset(
    session_factory: Callable[[], Session],
    client_factory: Callable[[Server], OutlineClient],
) -> LimitResetResult:
    """Limit reset under the fleet lock so it never interleaves with a sync."""
    async with FleetLock(session_factory):
        result = await run_in_thread(reset_due_limits, session_factory, client_factory)
    logger.info(f"Limit reset: {result.keys_reset} key(s) reset on {result.servers_checked} server(s)")
    return result
