"""Scrape worker process.

Usage:
    python -m pricewatch.worker              # process one batch and exit
    python -m pricewatch.worker --continuous # run the scheduler until SIGINT/SIGTERM
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewatch.config import settings
from pricewatch.db.session import async_session_factory, engine
from pricewatch.db.utils import check_database_health, create_schema
from pricewatch.scrapers.extractor import ProductExtractor
from pricewatch.scrapers.fetcher import PageFetcher
from pricewatch.scrapers.job_queue import ScrapeQueue
from pricewatch.scrapers.scheduler import ScraperScheduler
from pricewatch.scrapers.utils.proxy_manager import CircuitManager
from pricewatch.scrapers.utils.rate_limiter import DomainPacer
from pricewatch.services.cache_service import CacheService, get_cache_service
from pricewatch.services.maintenance_service import MaintenanceService
from pricewatch.services.notification_service import (
    NotificationService,
    WebhookNotificationSender,
    build_default_sender,
)

logger = structlog.get_logger(__name__)


async def run_batch_until_signalled(queue: ScrapeQueue, stop_event: asyncio.Event) -> Dict[str, int]:
    """Run one queue batch; a stop signal ends it after the current chunk.

    The batch is never cancelled, so claimed jobs always reach a final state.
    """
    batch = asyncio.ensure_future(queue.process_queue())
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({batch, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if not batch.done():
            logger.info("worker_shutdown_requested", draining=True)
            queue.request_stop()
        return await batch
    finally:
        stopper.cancel()


def build_queue(
    session_factory: async_sessionmaker[AsyncSession],
    cache: CacheService,
    notifications: Optional[NotificationService] = None,
) -> ScrapeQueue:
    """Wire the fetcher, extractor and notification trigger into a queue."""
    fetcher = PageFetcher(
        circuit_manager=CircuitManager(),
        pacer=DomainPacer(cache, settings.SCRAPER_DELAY_MS),
    )
    return ScrapeQueue(
        session_factory=session_factory,
        fetcher=fetcher,
        cache=cache,
        extractor=ProductExtractor(),
        notifications=notifications or NotificationService(build_default_sender()),
    )


async def run_worker(continuous: bool) -> int:
    """Run the worker until done (one-shot) or until signalled (continuous).

    Returns:
        Process exit code
    """
    log = logger.bind(service="worker", continuous=continuous, environment=settings.ENVIRONMENT)
    log.info("worker_starting")

    await create_schema(engine)

    cache = get_cache_service()
    log.info(
        "worker_dependencies_checked",
        database=await check_database_health(async_session_factory),
        redis_healthy=await cache.health_check(),
    )
    notifications = NotificationService(build_default_sender())
    queue = build_queue(async_session_factory, cache, notifications)
    exit_code = 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        async with async_session_factory() as db:
            await MaintenanceService(db).reclaim_stale_jobs()

        if not continuous:
            stats = await run_batch_until_signalled(queue, stop_event)
            log.info("worker_batch_finished", **stats)
            return exit_code

        async with async_session_factory() as db:
            await cache.warm_cache(db)

        scheduler = ScraperScheduler(queue, async_session_factory)
        scheduler.start()
        log.info("worker_running", jobs=scheduler.get_jobs_status())
        await stop_event.wait()

        log.info("worker_shutdown_requested")
        await scheduler.stop()

    except Exception as e:
        log.error("worker_failed", error=str(e), exc_info=True)
        exit_code = 1

    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        # Resources close only after the in-flight chunk has drained
        if isinstance(notifications.sender, WebhookNotificationSender):
            await notifications.sender.close()
        await cache.close()
        await engine.dispose()
        log.info("worker_stopped", exit_code=exit_code)

    return exit_code


def main():
    """Parse arguments and run the worker."""
    parser = argparse.ArgumentParser(description="Process pending product scrape jobs")
    parser.add_argument(
        "--continuous",
        action="store_true",
        default=settings.SCRAPER_CONTINUOUS,
        help=f"Keep running and process the queue every {settings.SCRAPER_INTERVAL_MINUTES} minutes",
    )
    parser.add_argument(
        "--log-level",
        default="DEBUG" if settings.DEBUG else "INFO",
        help="Root log level (default: INFO, DEBUG when DEBUG=true)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, args.log_level.upper(), logging.INFO),
    )

    sys.exit(asyncio.run(run_worker(args.continuous)))


if __name__ == "__main__":
    main()
