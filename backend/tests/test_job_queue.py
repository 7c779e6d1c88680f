"""Tests for ScrapeQueue: selection, chunking, retries and end-to-end scrapes."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.core.exceptions import FetchError, QueueProcessingError
from pricewatch.models import JobStatus, PriceHistory, Product, ScrapeJob
from pricewatch.models.base import utcnow
from pricewatch.scrapers.job_queue import ScrapeQueue
from pricewatch.scrapers.utils.proxy_manager import FetchedPage
from pricewatch.services.cache_service import product_price_key
from pricewatch.services.notification_service import NotificationService
from pricewatch.worker import run_batch_until_signalled


AMAZON_HTML = """
<html><body>
  <span id="productTitle">Acme Widget</span>
  <div class="a-price"><span class="a-offscreen">$29.99</span></div>
</body></html>
"""


class FakeFetcher:
    """Stands in for PageFetcher; tracks how many fetches overlap."""

    def __init__(self, html: str = AMAZON_HTML, error: Optional[Exception] = None, delay: float = 0.0):
        self.html = html
        self.error = error
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return FetchedPage(status_code=200, body=self.html, final_url=url)
        finally:
            self.in_flight -= 1


def make_queue(session_factory, cache, fetcher, sender, **kwargs) -> ScrapeQueue:
    kwargs.setdefault("sleep", AsyncMock())
    return ScrapeQueue(
        session_factory=session_factory,
        fetcher=fetcher,
        cache=cache,
        notifications=NotificationService(sender, crossing_only=False),
        max_concurrency=kwargs.pop("max_concurrency", 5),
        chunk_delay_ms=kwargs.pop("chunk_delay_ms", 2000),
        max_retries=kwargs.pop("max_retries", 3),
        **kwargs,
    )


async def add_pending_jobs(db: AsyncSession, count: int, host: str = "www.amazon.com") -> list:
    """Products with one pending job each, created one second apart an hour ago."""
    products = [Product(canonical_url=f"https://{host}/dp/ITEM{i:03d}") for i in range(count)]
    db.add_all(products)
    await db.flush()
    base = utcnow() - timedelta(hours=1)
    db.add_all([
        ScrapeJob(product_id=p.id, status=JobStatus.PENDING, created_at=base + timedelta(seconds=i))
        for i, p in enumerate(products)
    ])
    await db.commit()
    return products


async def jobs_for(db: AsyncSession, product_id) -> list:
    db.expire_all()
    result = await db.execute(
        select(ScrapeJob)
        .where(ScrapeJob.product_id == product_id)
        .order_by(ScrapeJob.created_at, ScrapeJob.retry_count)
    )
    return list(result.scalars().all())


async def status_counts(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(select(ScrapeJob.status, func.count()).group_by(ScrapeJob.status))
    return dict(result.all())


class TestScrapeQueue:
    """Tests for ScrapeQueue.process_queue."""

    async def test_empty_queue(self, session_factory, memory_cache, recording_sender):
        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)

        stats = await queue.process_queue()

        assert stats["selected"] == 0
        assert stats["completed"] == 0

    async def test_successful_scrape_end_to_end(self, session_factory, test_db, memory_cache, recording_sender):
        """Amazon-style page with a $29.99 price completes and records history."""
        [product] = await add_pending_jobs(test_db, 1)
        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)

        stats = await queue.process_queue()

        assert stats["selected"] == 1
        assert stats["completed"] == 1
        assert stats["failed"] == 0

        test_db.expire_all()
        refreshed = await test_db.get(Product, product.id)
        assert refreshed.title == "Acme Widget"
        assert refreshed.current_price == Decimal("29.99")
        assert refreshed.currency == "USD"
        assert refreshed.last_checked is not None

        history = (await test_db.execute(
            select(PriceHistory).where(PriceHistory.product_id == product.id)
        )).scalars().all()
        assert len(history) == 1
        assert history[0].price == Decimal("29.99")
        assert history[0].source == "scraper"

        [job] = await jobs_for(test_db, product.id)
        assert job.status == JobStatus.COMPLETED
        assert job.started_at is not None
        assert job.completed_at is not None
        assert job.error_message is None

        assert product_price_key(product.id) in memory_cache.store

    async def test_failed_fetch_spawns_retry(self, session_factory, test_db, memory_cache, recording_sender):
        [product] = await add_pending_jobs(test_db, 1)
        fetcher = FakeFetcher(error=FetchError(product.canonical_url, "timed out after 30.0s"))
        queue = make_queue(session_factory, memory_cache, fetcher, recording_sender)

        stats = await queue.process_queue()

        assert stats["failed"] == 1
        assert stats["requeued"] == 1

        failed, retry = await jobs_for(test_db, product.id)
        assert failed.status == JobStatus.FAILED
        assert failed.retry_count == 1
        assert "timed out" in failed.error_message
        assert failed.completed_at is not None
        assert retry.status == JobStatus.PENDING
        assert retry.retry_count == 1

    async def test_retries_capped_at_four_attempts(self, session_factory, test_db, memory_cache, recording_sender):
        """Repeated timeouts: initial attempt plus three retries, then terminal failure."""
        [product] = await add_pending_jobs(test_db, 1)
        fetcher = FakeFetcher(error=FetchError(product.canonical_url, "timed out after 30.0s"))
        queue = make_queue(session_factory, memory_cache, fetcher, recording_sender)

        requeued = []
        for _ in range(6):
            stats = await queue.process_queue()
            requeued.append(stats["requeued"])

        assert len(fetcher.calls) == 4
        assert requeued == [1, 1, 1, 0, 0, 0]

        jobs = await jobs_for(test_db, product.id)
        assert [job.status for job in jobs] == [JobStatus.FAILED] * 4
        assert [job.retry_count for job in jobs] == [1, 2, 3, 4]

    async def test_empty_extraction_is_a_failure(self, session_factory, test_db, memory_cache, recording_sender):
        [product] = await add_pending_jobs(test_db, 1)
        fetcher = FakeFetcher(html="<html><body>Robot check</body></html>")
        queue = make_queue(session_factory, memory_cache, fetcher, recording_sender)

        stats = await queue.process_queue()

        assert stats["failed"] == 1
        failed, retry = await jobs_for(test_db, product.id)
        assert failed.error_message == "No product data could be extracted"
        assert retry.status == JobStatus.PENDING

        test_db.expire_all()
        refreshed = await test_db.get(Product, product.id)
        assert refreshed.last_checked is None

    async def test_concurrency_is_bounded(self, session_factory, test_db, memory_cache, recording_sender):
        await add_pending_jobs(test_db, 12)
        fetcher = FakeFetcher(delay=0.05)
        sleep = AsyncMock()
        queue = make_queue(session_factory, memory_cache, fetcher, recording_sender, sleep=sleep)

        first = await queue.process_queue()
        second = await queue.process_queue()

        assert first["selected"] == 10
        assert first["completed"] == 10
        assert second["selected"] == 2
        assert second["completed"] == 2
        assert 1 < fetcher.max_in_flight <= 5
        assert queue.peak_active_jobs <= 5
        assert queue.active_jobs == 0

        # Two chunks in the first run, one in the second: one inter-chunk pause
        sleep.assert_awaited_once_with(2.0)

        assert await status_counts(test_db) == {JobStatus.COMPLETED: 12}

    async def test_one_failure_does_not_affect_chunk(self, session_factory, test_db, memory_cache, recording_sender):
        products = await add_pending_jobs(test_db, 3)
        bad_url = products[1].canonical_url

        class PartlyBrokenFetcher(FakeFetcher):
            async def fetch(self, url):
                if url == bad_url:
                    raise FetchError(url, "Service Unavailable", status_code=503)
                return await super().fetch(url)

        queue = make_queue(session_factory, memory_cache, PartlyBrokenFetcher(), recording_sender)

        stats = await queue.process_queue()

        assert stats["completed"] == 2
        assert stats["failed"] == 1
        [failed, _] = await jobs_for(test_db, products[1].id)
        assert "HTTP 503" in failed.error_message

    async def test_jobs_over_retry_ceiling_not_selected(self, session_factory, test_db, memory_cache, recording_sender):
        product = Product(canonical_url="https://www.amazon.com/dp/EXHAUSTED")
        test_db.add(product)
        await test_db.flush()
        test_db.add(ScrapeJob(product_id=product.id, status=JobStatus.PENDING, retry_count=4))
        await test_db.commit()

        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)

        assert await queue.select_pending_jobs() == []

    async def test_oldest_jobs_selected_first(self, session_factory, test_db, memory_cache, recording_sender):
        products = await add_pending_jobs(test_db, 12)
        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)

        selected = await queue.select_pending_jobs()

        assert len(selected) == 10
        assert [job.url for job in selected] == [p.canonical_url for p in products[:10]]

    async def test_already_claimed_job_is_skipped(self, session_factory, test_db, memory_cache, recording_sender):
        [product] = await add_pending_jobs(test_db, 1)
        fetcher = FakeFetcher()
        queue = make_queue(session_factory, memory_cache, fetcher, recording_sender)
        [pending] = await queue.select_pending_jobs()

        # Another scheduler claims it between selection and processing
        [job] = await jobs_for(test_db, product.id)
        job.status = JobStatus.RUNNING
        await test_db.commit()

        result = await queue.process_job(pending)

        assert result.outcome == "skipped"
        assert fetcher.calls == []

    async def test_selection_failure_aborts_run(self, memory_cache, recording_sender):
        from sqlalchemy.exc import OperationalError

        def broken_session_factory():
            raise OperationalError("SELECT", {}, Exception("database is down"))

        queue = make_queue(broken_session_factory, memory_cache, FakeFetcher(), recording_sender)

        with pytest.raises(QueueProcessingError):
            await queue.process_queue()

    async def test_bookkeeping_failure_of_whole_chunk_aborts(self, session_factory, test_db, memory_cache, recording_sender):
        await add_pending_jobs(test_db, 2)
        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)
        queue._claim = AsyncMock(side_effect=RuntimeError("row lock lost"))

        with pytest.raises(QueueProcessingError):
            await queue.process_queue()

    async def test_notifications_fire_after_scrape(self, session_factory, test_db, memory_cache, recording_sender):
        from pricewatch.models import WatchlistEntry

        [product] = await add_pending_jobs(test_db, 1)
        test_db.add(WatchlistEntry(user_id="user-1", product_id=product.id, target_price=Decimal("30.00")))
        await test_db.commit()

        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)
        await queue.process_queue()

        assert len(recording_sender.sent) == 1
        recipient, payload = recording_sender.sent[0]
        assert recipient == "user-1"
        assert payload.current_price == Decimal("29.99")
        assert payload.product_title == "Acme Widget"

    async def test_cache_failure_after_commit_keeps_job_completed(
        self, session_factory, test_db, recording_sender
    ):
        [product] = await add_pending_jobs(test_db, 1)
        cache = MagicMock()
        cache.cache_product = AsyncMock(side_effect=RuntimeError("cache unreachable"))
        queue = make_queue(session_factory, cache, FakeFetcher(), recording_sender)

        stats = await queue.process_queue()

        assert stats["completed"] == 1
        assert stats["failed"] == 0
        assert stats["requeued"] == 0
        [job] = await jobs_for(test_db, product.id)
        assert job.status == JobStatus.COMPLETED
        history_count = await test_db.scalar(
            select(func.count()).select_from(PriceHistory).where(PriceHistory.product_id == product.id)
        )
        assert history_count == 1

    async def test_stop_request_finishes_current_chunk(self, session_factory, test_db, memory_cache, recording_sender):
        await add_pending_jobs(test_db, 10)
        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)
        queue._sleep = AsyncMock(side_effect=lambda seconds: queue.request_stop())

        stats = await queue.process_queue()

        assert stats["selected"] == 10
        assert stats["completed"] == 5
        assert await status_counts(test_db) == {JobStatus.COMPLETED: 5, JobStatus.PENDING: 5}


class TestOneShotShutdown:
    """Tests for run_batch_until_signalled."""

    async def test_signal_drains_running_chunk(self, session_factory, test_db, memory_cache, recording_sender):
        await add_pending_jobs(test_db, 10)
        fetcher = FakeFetcher(delay=0.05)
        queue = make_queue(session_factory, memory_cache, fetcher, recording_sender)
        stop_event = asyncio.Event()

        batch = asyncio.ensure_future(run_batch_until_signalled(queue, stop_event))
        while not fetcher.calls:
            await asyncio.sleep(0.005)
        stop_event.set()
        stats = await batch

        assert queue.stop_requested is True
        assert stats["completed"] == 5
        assert await status_counts(test_db) == {JobStatus.COMPLETED: 5, JobStatus.PENDING: 5}

    async def test_batch_without_signal_runs_to_the_end(
        self, session_factory, test_db, memory_cache, recording_sender
    ):
        await add_pending_jobs(test_db, 3)
        queue = make_queue(session_factory, memory_cache, FakeFetcher(), recording_sender)

        stats = await run_batch_until_signalled(queue, asyncio.Event())

        assert stats["completed"] == 3
        assert queue.stop_requested is False
