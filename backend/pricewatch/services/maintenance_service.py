"""Retention cleanup and crash recovery for scrape data."""

from datetime import timedelta
from typing import Dict

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.models.base import utcnow
from pricewatch.models.price_history import PriceHistory
from pricewatch.models.scrape_job import JobStatus, ScrapeJob

logger = structlog.get_logger(__name__)


class MaintenanceService:
    """Periodic housekeeping run by the scheduler."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logger.bind(service="maintenance_service")

    async def cleanup_old_data(
        self,
        history_days: int = settings.PRICE_HISTORY_RETENTION_DAYS,
        job_days: int = settings.SCRAPE_JOB_RETENTION_DAYS,
    ) -> Dict[str, int]:
        """Delete expired price history and finished scrape jobs.

        Args:
            history_days: Keep price history newer than this
            job_days: Keep completed/failed jobs newer than this

        Returns:
            Dict with price_history_deleted and scrape_jobs_deleted
        """
        now = utcnow()

        history_result = await self.db.execute(
            delete(PriceHistory).where(PriceHistory.scraped_at < now - timedelta(days=history_days))
            .execution_options(synchronize_session=False)
        )
        jobs_result = await self.db.execute(
            delete(ScrapeJob).where(
                ScrapeJob.status.in_(JobStatus.FINISHED),
                ScrapeJob.created_at < now - timedelta(days=job_days),
            ).execution_options(synchronize_session=False)
        )
        await self.db.commit()

        stats = {
            "price_history_deleted": history_result.rowcount,
            "scrape_jobs_deleted": jobs_result.rowcount,
        }
        self.logger.info("old_data_cleaned", **stats)
        return stats

    async def reclaim_stale_jobs(
        self,
        timeout_minutes: int = settings.STALE_JOB_TIMEOUT_MINUTES,
    ) -> int:
        """Put jobs stuck in running back to pending.

        A job stays running forever if its worker died mid-scrape. Jobs
        claimed longer ago than timeout_minutes are released so the next
        queue run picks them up again.

        Returns:
            Number of jobs reset
        """
        cutoff = utcnow() - timedelta(minutes=timeout_minutes)
        result = await self.db.execute(
            update(ScrapeJob)
            .where(
                ScrapeJob.status == JobStatus.RUNNING,
                ScrapeJob.started_at < cutoff,
            )
            .values(status=JobStatus.PENDING, started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount:
            self.logger.warning("stale_jobs_reclaimed", count=result.rowcount, timeout_minutes=timeout_minutes)
        return result.rowcount
