"""
Fleet-wide sync coordinator.

Runs one server pass per active server, concurrently and bounded by
SYNC_MAX_CONCURRENCY, while holding the single-flight lock. Server passes are
synchronous (requests + SQLAlchemy), so each one runs in the default thread
pool executor with its own session.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.server import Server
from app.services.outline_client import OutlineClient
from app.services.server_sync_service import ServerSyncResult, sync_server_by_id
from app.services.sync_lock import FLEET_SYNC_LOCK, acquire_lock, heartbeat_lock, release_lock
from app.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class FleetSyncResult:
    synced_at: datetime
    results: List[ServerSyncResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)


def _with_session(session_factory: Callable[[], Session], fn: Callable[[Session], Any]) -> Any:
    db = session_factory()
    try:
        return fn(db)
    finally:
        db.close()


def _active_server_refs(session_factory: Callable[[], Session]):
    def load(db: Session):
        servers = db.query(Server).filter(Server.is_active.is_(True)).order_by(Server.id).all()
        return [(s.id, s.name) for s in servers]
    return _with_session(session_factory, load)


async def run_in_thread(fn: Callable[..., Any], *args) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


class FleetLock:
    """
    Async context manager holding the fleet lock.

    Raises SyncAlreadyRunningError on entry when another holder is live.
    While held, a background task refreshes the heartbeat every third of
    SYNC_LOCK_MAX_AGE_SECONDS so a slow pass never looks stale. Always
    releases on exit.
    """

    def __init__(self, session_factory: Callable[[], Session], name: str = FLEET_SYNC_LOCK):
        self.session_factory = session_factory
        self.name = name
        self.holder_id: Optional[str] = None
        self._keep_alive_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "FleetLock":
        self.holder_id = await run_in_thread(
            _with_session, self.session_factory, lambda db: acquire_lock(db, self.name)
        )
        self._keep_alive_task = asyncio.create_task(self._keep_alive())
        return self

    async def heartbeat(self) -> bool:
        return await run_in_thread(
            _with_session, self.session_factory, lambda db: heartbeat_lock(db, self.holder_id, self.name)
        )

    async def _keep_alive(self) -> None:
        interval = settings.SYNC_LOCK_MAX_AGE_SECONDS / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self.heartbeat()
            except Exception as e:
                logger.warning(f"Heartbeat for lock '{self.name}' failed: {e}")

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self._keep_alive_task is not None:
            self._keep_alive_task.cancel()
            try:
                await self._keep_alive_task
            except asyncio.CancelledError:
                pass
            self._keep_alive_task = None
        try:
            await run_in_thread(
                _with_session, self.session_factory, lambda db: release_lock(db, self.holder_id, self.name)
            )
        except Exception as e:
            # Lock goes stale after max age if release fails
            logger.error(f"Failed to release lock '{self.name}': {e}", exc_info=True)
        return False


async def run_fleet_sync(
    session_factory: Callable[[], Session],
    client_factory: Callable[[Server], OutlineClient],
    max_concurrency: Optional[int] = None,
) -> FleetSyncResult:
    """
    Sync every active server under the fleet lock.

    Raises SyncAlreadyRunningError if the lock is held. Otherwise always
    returns one result per server; a failing server never stops the others.
    """
    concurrency = max_concurrency or settings.SYNC_MAX_CONCURRENCY
    semaphore = asyncio.Semaphore(concurrency)

    async with FleetLock(session_factory):
        servers = await run_in_thread(_active_server_refs, session_factory)
        logger.info(f"Fleet sync started for {len(servers)} server(s), concurrency {concurrency}")

        async def run_one(server_id: int, server_name: str) -> ServerSyncResult:
            async with semaphore:
                try:
                    result = await run_in_thread(sync_server_by_id, session_factory, client_factory, server_id)
                except Exception as e:
                    logger.error(f"Unexpected error syncing server '{server_name}': {e}", exc_info=True)
                    result = ServerSyncResult(
                        server_id=server_id, server_name=server_name, success=False, error=str(e)
                    )
            return result

        results = await asyncio.gather(*(run_one(server_id, name) for server_id, name in servers))

    fleet_result = FleetSyncResult(synced_at=utcnow(), results=list(results))
    logger.info(f"Fleet sync finished: {fleet_result.succeeded} succeeded, {fleet_result.failed} failed")
    return fleet_result
