"""Scrape job queue: selects pending jobs and runs them in bounded chunks.

Each invocation of ScrapeQueue.process_queue() takes a batch of the oldest
pending jobs, splits it into chunks of max_concurrency, and runs the jobs
of one chunk concurrently. Chunks run one after another with a fixed
courtesy delay between them.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import settings
from pricewatch.core.exceptions import PriceWatchException, QueueProcessingError
from pricewatch.models.base import utcnow
from pricewatch.models.product import Product
from pricewatch.models.scrape_job import JobStatus, ScrapeJob
from pricewatch.scrapers.extractor import ProductExtractor
from pricewatch.scrapers.fetcher import PageFetcher
from pricewatch.services.cache_service import CacheService
from pricewatch.services.notification_service import NotificationService
from pricewatch.services.price_update_service import PriceUpdateService

logger = structlog.get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000

# Per-job outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass
class PendingJob:
    """A selected job joined with the URL of its product."""

    job_id: UUID
    product_id: UUID
    url: str
    retry_count: int


@dataclass
class JobResult:
    job_id: UUID
    outcome: str
    requeued: bool = False
    error: Optional[str] = None


class ScrapeQueue:
    """Runs pending scrape jobs with bounded concurrency.

    A job that fails for any reason (fetch, extraction, persistence, or an
    empty extraction) is marked failed and, while the retry budget lasts,
    replaced by a new pending job for the same product. Only failures of
    the queue's own bookkeeping abort a run.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: PageFetcher,
        cache: CacheService,
        extractor: Optional[ProductExtractor] = None,
        notifications: Optional[NotificationService] = None,
        max_concurrency: int = settings.MAX_CONCURRENT_SCRAPERS,
        chunk_delay_ms: int = settings.SCRAPER_DELAY_MS,
        max_retries: int = settings.SCRAPE_MAX_RETRIES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize scrape queue.

        Args:
            session_factory: Factory for per-job database sessions
            fetcher: Page fetcher (Tor with direct fallback)
            cache: Cache service for write-through
            extractor: HTML extractor
            notifications: Watcher notification trigger
            max_concurrency: Jobs run at once; the batch is twice this
            chunk_delay_ms: Pause between chunks in milliseconds
            max_retries: Retries allowed after the first attempt
            sleep: Async sleep taking seconds
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.session_factory = session_factory
        self.fetcher = fetcher
        self.cache = cache
        self.extractor = extractor or ProductExtractor()
        self.notifications = notifications or NotificationService()
        self.max_concurrency = max_concurrency
        self.chunk_delay_ms = chunk_delay_ms
        self.max_retries = max_retries
        self._sleep = sleep

        self.active_jobs = 0
        self.peak_active_jobs = 0
        self.stop_requested = False
        self.logger = logger.bind(service="scrape_queue")

    def request_stop(self) -> None:
        """Let the running chunk finish, then start no further chunks."""
        self.stop_requested = True

    @property
    def batch_size(self) -> int:
        return self.max_concurrency * 2

    async def process_queue(self) -> Dict[str, int]:
        """Run one batch of pending jobs.

        Returns:
            Dict with run statistics:
                - selected: Jobs picked up by the selection query
                - completed: Jobs that stored a result
                - failed: Jobs marked failed
                - requeued: Failed jobs that got a follow-up pending job
                - skipped: Jobs another run claimed first
                - errors: Jobs whose own bookkeeping raised

        Raises:
            QueueProcessingError: If jobs cannot be selected or a whole
                chunk fails at the bookkeeping layer
        """
        stats = {
            "selected": 0,
            "completed": 0,
            "failed": 0,
            "requeued": 0,
            "skipped": 0,
            "errors": 0,
        }

        try:
            jobs = await self.select_pending_jobs()
        except SQLAlchemyError as e:
            self.logger.error("pending_job_selection_failed", error=str(e), exc_info=True)
            raise QueueProcessingError(f"Could not select pending jobs: {e}") from e

        stats["selected"] = len(jobs)
        if not jobs:
            self.logger.debug("queue_empty")
            return stats

        self.logger.info("queue_run_started", jobs=len(jobs), max_concurrency=self.max_concurrency)

        chunks = [
            jobs[i:i + self.max_concurrency]
            for i in range(0, len(jobs), self.max_concurrency)
        ]
        for index, chunk in enumerate(chunks):
            if index > 0 and self.chunk_delay_ms > 0:
                await self._sleep(self.chunk_delay_ms / 1000.0)
            if self.stop_requested:
                # Unclaimed jobs stay pending for the next run
                self.logger.info("queue_run_stopped", chunks_left=len(chunks) - index)
                break
            await self._run_chunk(chunk, stats)

        self.logger.info("queue_run_completed", **stats)
        return stats

    async def select_pending_jobs(self) -> List[PendingJob]:
        """Oldest pending jobs under the retry ceiling, with product URLs."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    ScrapeJob.id,
                    ScrapeJob.product_id,
                    ScrapeJob.retry_count,
                    Product.canonical_url,
                )
                .join(Product, Product.id == ScrapeJob.product_id)
                .where(
                    ScrapeJob.status == JobStatus.PENDING,
                    ScrapeJob.retry_count <= self.max_retries,
                )
                .order_by(ScrapeJob.created_at, ScrapeJob.id)
                .limit(self.batch_size)
            )
            return [
                PendingJob(job_id=row.id, product_id=row.product_id, url=row.canonical_url, retry_count=row.retry_count)
                for row in result.all()
            ]

    async def _run_chunk(self, chunk: List[PendingJob], stats: Dict[str, int]) -> None:
        results = await asyncio.gather(
            *(self.process_job(job) for job in chunk),
            return_exceptions=True,
        )

        errors = 0
        for job, result in zip(chunk, results):
            if isinstance(result, BaseException):
                errors += 1
                self.logger.error(
                    "job_bookkeeping_failed",
                    job_id=str(job.job_id),
                    error=str(result),
                    exc_info=result,
                )
                continue
            stats[result.outcome] += 1
            if result.requeued:
                stats["requeued"] += 1

        stats["errors"] += errors
        if errors == len(chunk):
            raise QueueProcessingError(f"All {errors} jobs in chunk failed at the bookkeeping layer")

    async def process_job(self, job: PendingJob) -> JobResult:
        """Claim, scrape and record one job.

        Scrape failures become job state. Exceptions escape only when the
        job row itself cannot be updated.
        """
        if not await self._claim(job):
            self.logger.info("job_already_claimed", job_id=str(job.job_id))
            return JobResult(job.job_id, OUTCOME_SKIPPED)

        self.active_jobs += 1
        self.peak_active_jobs = max(self.peak_active_jobs, self.active_jobs)
        try:
            error = await self._scrape_and_store(job)
        finally:
            self.active_jobs -= 1

        if error is None:
            return JobResult(job.job_id, OUTCOME_COMPLETED)

        requeued = await self._mark_failed(job, error)
        return JobResult(job.job_id, OUTCOME_FAILED, requeued=requeued, error=error)

    async def _claim(self, job: PendingJob) -> bool:
        """pending -> running, only if no one else got there first."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(ScrapeJob)
                .where(ScrapeJob.id == job.job_id, ScrapeJob.status == JobStatus.PENDING)
                .values(status=JobStatus.RUNNING, started_at=utcnow())
            )
            await session.commit()
            return result.rowcount == 1

    async def _scrape_and_store(self, job: PendingJob) -> Optional[str]:
        """Returns None on success, otherwise the error message for the job."""
        log = self.logger.bind(job_id=str(job.job_id), product_id=str(job.product_id), url=job.url)
        try:
            page = await self.fetcher.fetch(job.url)
            extracted = self.extractor.extract(page.body, page.final_url)
            if not extracted.has_usable_data:
                log.warning("no_product_data_extracted")
                return "No product data could be extracted"

            async with self.session_factory() as session:
                updater = PriceUpdateService(session, self.cache, self.notifications)
                await updater.apply_scrape(job.product_id, extracted, job_id=job.job_id)

        except PriceWatchException as e:
            log.warning("scrape_job_failed", error=e.message, retry_count=job.retry_count)
            return e.message
        except Exception as e:
            log.error("scrape_job_unexpected_error", error=str(e), exc_info=True)
            return f"{type(e).__name__}: {e}"

        log.info("scrape_job_completed")
        return None

    async def _mark_failed(self, job: PendingJob, error: str) -> bool:
        """Record the failure and spawn a retry while the budget allows.

        Returns:
            True if a new pending job was created
        """
        retry_count = job.retry_count + 1
        requeue = job.retry_count < self.max_retries

        async with self.session_factory() as session:
            await session.execute(
                update(ScrapeJob)
                .where(ScrapeJob.id == job.job_id)
                .values(
                    status=JobStatus.FAILED,
                    error_message=error[:MAX_ERROR_MESSAGE_LENGTH],
                    retry_count=retry_count,
                    completed_at=utcnow(),
                )
            )
            if requeue:
                session.add(ScrapeJob(
                    product_id=job.product_id,
                    status=JobStatus.PENDING,
                    retry_count=retry_count,
                ))
            await session.commit()

        if requeue:
            self.logger.info(
                "job_requeued",
                product_id=str(job.product_id),
                retry=retry_count,
                max_retries=self.max_retries,
            )
        else:
            self.logger.warning(
                "job_retries_exhausted",
                product_id=str(job.product_id),
                attempts=retry_count,
            )
        return requeue
