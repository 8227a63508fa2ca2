import logging

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from radiochat.config import Settings
from radiochat.services.cleanup import CleanupService

logger = logging.getLogger(__name__)

logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)
logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)
logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)

_scheduler: AsyncIOScheduler | None = None


async def job_purge_expired_bans(cleanup: CleanupService):
    """Removes bans whose time is up. Runs every cleanup interval."""
    try:
        await cleanup.purge_expired_bans()
    except Exception as e:
        logger.error(f"Expired ban purge failed: {e}")


async def job_evict_stale_sessions(cleanup: CleanupService):
    """Drops sessions without a heartbeat for five minutes, then rebalances decoys."""
    try:
        await cleanup.evict_stale_sessions()
    except Exception as e:
        logger.error(f"Stale session eviction failed: {e}")


async def job_purge_deleted_messages(cleanup: CleanupService, days: int):
    """Hard-deletes soft-deleted messages past the retention period. Runs nightly."""
    try:
        await cleanup.purge_deleted_messages(days)
    except Exception as e:
        logger.error(f"Deleted message purge failed: {e}")


def setup_scheduler(settings: Settings, cleanup: CleanupService) -> AsyncIOScheduler:
    global _scheduler
    if _scheduler:
        return _scheduler
    tz = pytz.timezone(settings.timezone)
    _scheduler = AsyncIOScheduler(timezone=tz)
    interval = IntervalTrigger(seconds=settings.cleanup_interval_seconds)
    _scheduler.add_job(job_purge_expired_bans, interval, args=[cleanup], id="purge_expired_bans")
    _scheduler.add_job(job_evict_stale_sessions, interval, args=[cleanup], id="evict_stale_sessions")
    _scheduler.add_job(
        job_purge_deleted_messages,
        CronTrigger(hour=3, minute=0),
        args=[cleanup, settings.deleted_message_retention_days],
        id="purge_deleted_messages",
    )
    _scheduler.start()
    logger.info(f"Scheduler started (cleanup every {settings.cleanup_interval_seconds}s, tz={settings.timezone})")
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
