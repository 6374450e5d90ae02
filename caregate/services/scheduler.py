"""Background job scheduler.

APScheduler job that invalidates sessions nobody has used within the
freshness window, so they show up as ended in the audit log rather than
lingering until their next presentation.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from caregate.config import settings
from caregate.database import get_session_maker
from caregate.logging_config import get_logger
from caregate.services.session_manager import cleanup_stale_sessions

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def cleanup_sessions_job() -> None:
    """Invalidate stale sessions in one transaction."""
    try:
        async with get_session_maker()() as db:
            count = await cleanup_stale_sessions(db)
            await db.commit()
    except Exception as e:
        logger.error("Stale session cleanup failed", error=str(e))
        return

    if count:
        logger.info("Stale sessions invalidated", count=count)


def start_scheduler() -> AsyncIOScheduler:
    """Start the background job scheduler.

    Returns:
        The started scheduler instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()

    if settings.session_cleanup_enabled:
        scheduler.add_job(
            cleanup_sessions_job,
            trigger=IntervalTrigger(minutes=settings.session_cleanup_interval_minutes),
            id="session_cleanup",
            name="Stale Session Cleanup",
            replace_existing=True,
        )
        logger.info(
            "Scheduled session cleanup job",
            interval_minutes=settings.session_cleanup_interval_minutes,
        )

    scheduler.start()
    return scheduler


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Scheduler stopped")
