"""
Periodic jobs (APScheduler).

- fleet sync every FLEET_SYNC_INTERVAL_SECONDS
- periodic data-limit reset every LIMIT_RESET_INTERVAL_MINUTES
- archive cleanup once a day at ARCHIVE_CLEANUP_HOUR (UTC)
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import settings
from app.services.archive_service import run_archive_cleanup
from app.services.fleet_sync import run_fleet_sync, run_in_thread
from app.services.limit_reset_service import run_limit_reset
from app.services.sync_lock import SyncAlreadyRunningError

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def fleet_sync_job(session_factory, client_factory):
    try:
        result = await run_fleet_sync(session_factory, client_factory)
    except SyncAlreadyRunningError as e:
        logger.info(f"Scheduled fleet sync skipped: {e}")
        return
    except Exception as e:
        logger.error(f"Scheduled fleet sync failed: {e}", exc_info=True)
        return
    if result.failed:
        failed = ", ".join(r.server_name for r in result.results if not r.success)
        logger.warning(f"Scheduled fleet sync: {result.failed} server(s) failed ({failed})")


async def limit_reset_job(session_factory, client_factory):
    try:
        await run_limit_reset(session_factory, client_factory)
    except SyncAlreadyRunningError as e:
        logger.info(f"Scheduled limit reset skipped: {e}")
    except Exception as e:
        logger.error(f"Scheduled limit reset failed: {e}", exc_info=True)


async def archive_cleanup_job(session_factory):
    try:
        await run_in_thread(run_archive_cleanup, session_factory)
    except Exception as e:
        logger.error(f"Scheduled archive cleanup failed: {e}", exc_info=True)


def setup_scheduler(session_factory, client_factory) -> AsyncIOScheduler:
    """Register all periodic jobs and start the scheduler."""
    scheduler.add_job(
        fleet_sync_job,
        IntervalTrigger(seconds=settings.FLEET_SYNC_INTERVAL_SECONDS),
        args=[session_factory, client_factory],
        id="fleet_sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        limit_reset_job,
        IntervalTrigger(minutes=settings.LIMIT_RESET_INTERVAL_MINUTES),
        args=[session_factory, client_factory],
        id="limit_reset",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        archive_cleanup_job,
        CronTrigger(hour=settings.ARCHIVE_CLEANUP_HOUR, minute=0),
        args=[session_factory],
        id="archive_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started: fleet sync, limit reset, archive cleanup")
    return scheduler


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
