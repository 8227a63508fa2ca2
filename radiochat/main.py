import asyncio
import logging

from radiochat.config import Settings
from radiochat.core import ChatCore
from radiochat.jobs.scheduler import setup_scheduler, shutdown_scheduler
from radiochat.logger import setup_logging

logger = logging.getLogger(__name__)


async def main():
    """Start the chat core and its maintenance jobs, then wait until cancelled."""
    settings = Settings()
    setup_logging(settings)

    logger.info("=" * 60)
    logger.info("STARTING RADIOCHAT CORE")
    logger.info("=" * 60)
    logger.info(f"Database: {settings.database_url.split('://', 1)[0]}")
    logger.info(f"Redis: {settings.redis_host}:{settings.redis_port} (prefix '{settings.redis_prefix}')")
    logger.info(f"Log level: {settings.log_level}")

    core = ChatCore.create(settings)
    await core.start()
    if not core.redis.is_available:
        logger.warning("Redis unavailable: history cache, rate limits and live updates are degraded")

    setup_scheduler(settings, core.cleanup)
    # First pass right away so stale state from a previous run is gone
    await core.cleanup.run_all(settings.deleted_message_retention_days)

    logger.info("=" * 60)
    logger.info("RADIOCHAT CORE READY")
    logger.info("=" * 60)
    try:
        await asyncio.Event().wait()
    finally:
        shutdown_scheduler()
        await core.close()
        logger.info("Shutdown complete")


def run():
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass


if __name__ == "__main__":
    run()
