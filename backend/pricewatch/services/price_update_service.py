"""Applies a successful scrape: product row, price history, cache, notifications."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.core.exceptions import PersistenceError
from pricewatch.models.base import utcnow
from pricewatch.models.price_history import PriceHistory
from pricewatch.models.product import Product
from pricewatch.models.scrape_job import JobStatus, ScrapeJob
from pricewatch.scrapers.base import ExtractedProduct
from pricewatch.services.cache_service import CacheService
from pricewatch.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)


@dataclass
class PriceUpdateResult:
    product: Product
    previous_price: Optional[Decimal]
    history_recorded: bool
    notifications_sent: int = 0


class PriceUpdateService:
    """Persists scrape results for one database session.

    The product update, the price history row and the job's completed mark
    are committed together; the cache and watchers are only touched after
    that commit succeeds.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: CacheService,
        notifications: NotificationService,
    ):
        """Initialize price update service.

        Args:
            db: Async database session
            cache: Cache service for write-through
            notifications: Watcher notification trigger
        """
        self.db = db
        self.cache = cache
        self.notifications = notifications
        self.logger = logger.bind(service="price_update_service")

    async def apply_scrape(
        self,
        product_id: UUID,
        extracted: ExtractedProduct,
        job_id: Optional[UUID] = None,
    ) -> PriceUpdateResult:
        """Write a successful extraction and fan out its side effects.

        Args:
            product_id: Product that was scraped
            extracted: Extraction result with usable data
            job_id: Scrape job to mark completed in the same transaction

        Returns:
            PriceUpdateResult with the refreshed product

        Raises:
            PersistenceError: If the datastore write fails (rolled back)
        """
        try:
            result = await self._persist(product_id, extracted, job_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            # The payload is logged in full so the result can be replayed by hand.
            self.logger.error(
                "scrape_result_persist_failed",
                product_id=str(product_id),
                job_id=str(job_id) if job_id else None,
                payload=extracted.to_log_dict(),
                error=str(e),
                exc_info=True,
            )
            raise PersistenceError(str(product_id), str(e)) from e

        # The scrape is committed from here on; side effects only log their failures.
        await self.write_through(result.product)
        result.notifications_sent = await self._notify(result)

        self.logger.info(
            "product_price_updated",
            product_id=str(product_id),
            price=str(result.product.current_price) if result.product.current_price is not None else None,
            previous_price=str(result.previous_price) if result.previous_price is not None else None,
            history_recorded=result.history_recorded,
            notifications_sent=result.notifications_sent,
        )
        return result

    async def _persist(
        self,
        product_id: UUID,
        extracted: ExtractedProduct,
        job_id: Optional[UUID],
    ) -> PriceUpdateResult:
        product = (
            await self.db.execute(select(Product).where(Product.id == product_id))
        ).scalar_one_or_none()
        if product is None:
            raise PersistenceError(str(product_id), "product no longer exists")

        previous_price = product.current_price
        now = utcnow()

        # Descriptive fields keep their old value when this scrape missed them,
        # but the price always reflects the latest scrape, even when missing.
        if extracted.title is not None:
            product.title = extracted.title
        if extracted.image_url is not None:
            product.image_url = extracted.image_url
        if extracted.currency:
            product.currency = extracted.currency
        product.current_price = extracted.price
        product.last_checked = now

        history_recorded = False
        if extracted.price is not None:
            self.db.add(PriceHistory(
                product_id=product.id,
                price=extracted.price,
                currency=product.currency,
                source="scraper",
                scraped_at=now,
            ))
            history_recorded = True

        if job_id is not None:
            await self.db.execute(
                update(ScrapeJob)
                .where(ScrapeJob.id == job_id)
                .values(status=JobStatus.COMPLETED, completed_at=now, error_message=None)
            )

        await self.db.flush()
        return PriceUpdateResult(
            product=product,
            previous_price=previous_price,
            history_recorded=history_recorded,
        )

    async def write_through(self, product: Product) -> None:
        """Refresh the cached meta and price snapshots of a product."""
        try:
            await self.cache.cache_product(product)
        except Exception as e:
            self.logger.error(
                "cache_write_through_failed",
                product_id=str(product.id),
                error=str(e),
                exc_info=True,
            )

    async def _notify(self, result: PriceUpdateResult) -> int:
        try:
            return await self.notifications.notify_watchers(
                self.db, result.product, previous_price=result.previous_price,
            )
        except Exception as e:
            # A failed watcher lookup only loses notifications
            self.logger.error(
                "watcher_lookup_failed",
                product_id=str(result.product.id),
                error=str(e),
                exc_info=True,
            )
            return 0
