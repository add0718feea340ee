"""APScheduler setup for the recurring Umami sync job."""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from umami_sync.core.clock import utcnow
from umami_sync.core.config import get_settings
from umami_sync.core.database import get_session_maker
from umami_sync.models.sync_log import SyncLog
from umami_sync.services.sync import (
    SyncAlreadyRunningError,
    SyncRunError,
    SyncRunResult,
    open_sync_service,
)

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def run_status(result: SyncRunResult) -> str:
    """Map a run result onto the sync log status."""
    if not result.success:
        return "failed"
    if result.failed_partitions:
        return "partial"
    return "success"


async def record_run(
    session_factory: async_sessionmaker[AsyncSession],
    trigger: str,
    result: SyncRunResult,
) -> None:
    """Write one sync_log row for a finished run."""
    async with session_factory() as session:
        session.add(SyncLog(
            trigger=trigger,
            sync_kind=result.window.kind.value if result.window else None,
            window_start=result.window.start if result.window else None,
            window_end=result.window.end if result.window else None,
            started_at=result.started_at,
            completed_at=result.completed_at or utcnow(),
            status=run_status(result),
            details=result.to_dict(),
            error_message=result.error,
        ))
        await session.commit()


async def run_sync_job(
    trigger: str = "scheduled",
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> SyncRunResult | None:
    """
    Run one sync and log it.

    Returns None when the run was skipped because another one holds the
    lease. Re-raises SyncRunError after logging so the caller sees failure.
    """
    settings = get_settings()
    session_factory = session_factory or get_session_maker()
    logger.info(f"Starting {trigger} sync job")

    async with open_sync_service(settings, session_factory) as service:
        try:
            result = await service.run()
        except SyncAlreadyRunningError as e:
            logger.warning(f"Skipping {trigger} sync: {e}")
            return None
        except SyncRunError as e:
            await record_run(session_factory, trigger, e.result)
            raise

    await record_run(session_factory, trigger, result)
    logger.info(f"{trigger.capitalize()} sync completed with status {run_status(result)}")
    return result


async def run_scheduled_sync():
    """Scheduler entry point; failures propagate to APScheduler's job error log."""
    await run_sync_job("scheduled")


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler()

    job_kwargs = {}
    if settings.run_on_startup:
        job_kwargs["next_run_time"] = datetime.now()

    scheduler.add_job(
        run_scheduled_sync,
        IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="umami_sync",
        name="Umami session and analytics sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        **job_kwargs,
    )

    scheduler.start()
    logger.info(f"Scheduler started - Umami sync every {settings.sync_interval_minutes} minutes")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
