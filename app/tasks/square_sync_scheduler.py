"""Square Sync Scheduler - nightly sales import and stale run sweep.

Runs two jobs:
- Daily at SQUARE_SYNC_HOUR (UTC): sync the trailing window for every
  connected company that has a location selected
- Every 15 minutes: mark sync runs stuck in ``processing`` as failed, since a
  crashed process never finalizes its run record
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update

from app.config import settings
from app.core.sentry import capture_exception
from app.database import async_session_maker
from app.models.integration_connection import IntegrationConnection, ConnectionStatus
from app.models.sales_import import SalesImport, SyncRunStatus
from app.services.square_sync_service import get_square_sync_service

logger = logging.getLogger(__name__)

ABANDONED_MESSAGE = "Sync run abandoned (no result recorded before timeout)"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler()
    return scheduler


async def sync_all_connections(session_maker=None, service=None) -> dict:
    """
    Main job: run a scheduled sync for every connected company.

    A failing company is logged and counted; it never stops the others.
    """
    session_maker = session_maker or async_session_maker
    service = service or get_square_sync_service()
    logger.info("Starting scheduled Square sales sync...")
    succeeded = 0
    failed = 0

    async with session_maker() as db:
        result = await db.execute(
            select(IntegrationConnection.company_id, IntegrationConnection.location_id).where(
                IntegrationConnection.provider == "square",
                IntegrationConnection.status == ConnectionStatus.CONNECTED,
                IntegrationConnection.location_id.is_not(None),
            )
        )
        targets = result.all()

    logger.info(f"Found {len(targets)} Square connections to sync")

    for company_id, location_id in targets:
        try:
            async with session_maker() as db:
                sync_result = await service.sync_sales(db, company_id, location_id, trigger="scheduled")
            if sync_result.success:
                succeeded += 1
            else:
                failed += 1
                logger.warning(f"Scheduled Square sync failed for company {company_id}: {sync_result.error}")
        except Exception as e:
            failed += 1
            logger.error(f"Error in scheduled Square sync for company {company_id}: {e}", exc_info=True)
            capture_exception(e, context={"company_id": str(company_id), "job": "square_sales_sync"})

    logger.info(f"Scheduled Square sync complete. Succeeded: {succeeded}, Failed: {failed}")
    return {"succeeded": succeeded, "failed": failed}


async def mark_stale_runs(session_maker=None, stale_after_minutes: Optional[int] = None) -> int:
    """Fail sync runs that have been ``processing`` for longer than the threshold."""
    session_maker = session_maker or async_session_maker
    stale_after = stale_after_minutes or settings.SYNC_RUN_STALE_MINUTES
    cutoff = datetime.utcnow() - timedelta(minutes=stale_after)

    async with session_maker() as db:
        result = await db.execute(
            update(SalesImport)
            .where(
                SalesImport.status == SyncRunStatus.PROCESSING,
                SalesImport.created_at < cutoff,
            )
            .values(
                status=SyncRunStatus.FAILED,
                error_message=ABANDONED_MESSAGE,
                completed_at=datetime.utcnow(),
            )
        )
        await db.commit()

    count = result.rowcount or 0
    if count:
        logger.warning(f"Marked {count} stale sync runs as failed")
    return count


def start_square_sync_scheduler():
    """Start the Square sync scheduler."""
    scheduler = get_scheduler()

    scheduler.add_job(
        sync_all_connections,
        CronTrigger(hour=settings.SQUARE_SYNC_HOUR, minute=0),
        id="square_sales_sync",
        name="Nightly Square sales sync",
        replace_existing=True,
    )

    scheduler.add_job(
        mark_stale_runs,
        IntervalTrigger(minutes=15),
        id="square_stale_run_sweep",
        name="Mark abandoned sync runs as failed",
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info("Square sync scheduler started")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: next run at {job.next_run_time}")


def stop_square_sync_scheduler():
    """Stop the Square sync scheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Square sync scheduler stopped")
