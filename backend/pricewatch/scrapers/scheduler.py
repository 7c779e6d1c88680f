"""APScheduler-based queue scheduler.

Runs the scrape queue on a fixed interval, plus the housekeeping jobs
(stale-job reclaim, retention cleanup). Producers that enqueue new scrape
jobs call request_run() to have the queue processed without waiting for
the next tick.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, Optional, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import settings
from pricewatch.scrapers.job_queue import ScrapeQueue
from pricewatch.services.maintenance_service import MaintenanceService

logger = structlog.get_logger(__name__)

QUEUE_JOB_ID = "process_scrape_queue"
RECLAIM_JOB_ID = "reclaim_stale_jobs"
CLEANUP_JOB_ID = "cleanup_old_data"


class ScraperScheduler:
    """Manages periodic queue runs using APScheduler.

    This scheduler:
    - Processes the scrape queue every interval_minutes
    - Serializes queue runs within the process with an asyncio.Lock
    - Accepts explicit run requests from job producers
    - Drains the in-flight run on stop()
    """

    def __init__(
        self,
        queue: ScrapeQueue,
        db_session_factory: async_sessionmaker[AsyncSession],
        interval_minutes: int = settings.SCRAPER_INTERVAL_MINUTES,
    ):
        """Initialize scraper scheduler.

        Args:
            queue: Scrape queue to run
            db_session_factory: Async session factory for housekeeping jobs
            interval_minutes: Minutes between queue runs
        """
        self.queue = queue
        self.db_session_factory = db_session_factory
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="scraper_scheduler")

        self._run_lock = asyncio.Lock()
        self._stopping = False
        self._pending_requests: Set[asyncio.Task] = set()
        self.last_run_stats: Optional[Dict[str, int]] = None
        self.runs_completed = 0

    def start(self) -> None:
        """Register the periodic jobs and start the scheduler."""
        if self.scheduler.running:
            self.logger.warning("scheduler_already_running")
            return

        now = datetime.now(timezone.utc)
        self.scheduler.add_job(
            func=self._run_queue_wrapper,
            trigger=IntervalTrigger(minutes=self.interval_minutes, start_date=now, timezone="UTC"),
            id=QUEUE_JOB_ID,
            name="Process scrape queue",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            func=self._reclaim_wrapper,
            trigger=IntervalTrigger(minutes=settings.STALE_JOB_TIMEOUT_MINUTES, timezone="UTC"),
            id=RECLAIM_JOB_ID,
            name="Reclaim stale scrape jobs",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            func=self._cleanup_wrapper,
            trigger=IntervalTrigger(hours=24, timezone="UTC"),
            id=CLEANUP_JOB_ID,
            name="Retention cleanup",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.start()
        self.logger.info("scheduler_started", interval_minutes=self.interval_minutes)

    async def stop(self) -> None:
        """Stop scheduling and wait for the in-flight queue run to finish.

        The running batch ends after its current chunk. Runs that reach the
        lock afterwards return without touching the queue.
        """
        self._stopping = True
        self.queue.request_stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if self._pending_requests:
            await asyncio.gather(*self._pending_requests, return_exceptions=True)

        # Acquiring the lock waits out a run started by the interval trigger
        async with self._run_lock:
            pass

        self.logger.info("scheduler_stopped", runs_completed=self.runs_completed)

    async def run_once(self) -> Dict[str, int]:
        """Process the queue now; waits for any run already in progress.

        Returns an empty dict once stop() has been called.

        Raises:
            QueueProcessingError: On a systemic queue failure
        """
        async with self._run_lock:
            if self._stopping:
                self.logger.info("queue_run_skipped", reason="scheduler_stopping")
                return {}
            stats = await self.queue.process_queue()
            self.last_run_stats = stats
            self.runs_completed += 1
            return stats

    def request_run(self, reason: str = "manual") -> asyncio.Task:
        """Schedule a queue run in the background.

        Called after new jobs are enqueued. Failures are logged by the
        task's done-callback rather than raised to the caller.

        Returns:
            The background task
        """
        self.logger.info("queue_run_requested", reason=reason)
        task = asyncio.ensure_future(self.run_once())
        self._pending_requests.add(task)
        task.add_done_callback(self._on_request_done)
        return task

    def _on_request_done(self, task: asyncio.Task) -> None:
        self._pending_requests.discard(task)
        if task.cancelled():
            self.logger.warning("queue_run_request_cancelled")
            return
        error = task.exception()
        if error is not None:
            self.logger.error("queue_run_request_failed", error=str(error), exc_info=error)

    async def _run_queue_wrapper(self) -> None:
        """Called by APScheduler; errors are logged so the schedule keeps going."""
        try:
            await self.run_once()
        except Exception as e:
            self.logger.error("scheduled_queue_run_failed", error=str(e), exc_info=True)

    async def _reclaim_wrapper(self) -> None:
        try:
            async with self.db_session_factory() as db:
                await MaintenanceService(db).reclaim_stale_jobs()
        except Exception as e:
            self.logger.error("stale_job_reclaim_failed", error=str(e), exc_info=True)

    async def _cleanup_wrapper(self) -> None:
        try:
            async with self.db_session_factory() as db:
                await MaintenanceService(db).cleanup_old_data()
        except Exception as e:
            self.logger.error("retention_cleanup_failed", error=str(e), exc_info=True)

    def get_jobs_status(self) -> dict:
        """Next run time and trigger of each scheduled job."""
        jobs = {}
        for job in self.scheduler.get_jobs():
            jobs[job.id] = {
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
        return jobs

    def is_running(self) -> bool:
        return self.scheduler.running
