"""Product intake: tracked products, scrape job enqueueing and watchlist sync."""

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.models.base import utcnow
from pricewatch.models.product import Product
from pricewatch.models.scrape_job import JobStatus, ScrapeJob
from pricewatch.models.watchlist import WatchlistEntry
from pricewatch.scrapers.utils.normalizer import is_http_url, normalize_url
from pricewatch.services.cache_service import CacheService, product_meta_snapshot, product_price_snapshot

logger = structlog.get_logger(__name__)

# Per-item statuses reported by sync_watchlist
SYNC_CREATED = "created"
SYNC_QUEUED = "queued_for_update"
SYNC_CURRENT = "current"
SYNC_ERROR = "error"


class ProductService:
    """Service for registering products and keeping watchlists in sync.

    New products are created with only their canonical URL and queued for
    scraping; the scrape queue fills in everything else.
    """

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        """Initialize product service.

        Args:
            db: Async database session
            cache: Cache service for product snapshots and sync summaries (optional)
        """
        self.db = db
        self.cache = cache
        self.logger = logger.bind(service="product_service")

    async def get_product_by_url(self, url: str) -> Optional[Product]:
        result = await self.db.execute(
            select(Product).where(Product.canonical_url == normalize_url(url))
        )
        return result.scalar_one_or_none()

    async def get_or_create_product(self, url: str) -> Tuple[Product, bool]:
        """Find a product by URL or create it.

        Args:
            url: Product page URL (normalized before lookup)

        Returns:
            Tuple of (product, created)

        Raises:
            ValueError: If the URL is not an absolute http(s) URL
        """
        if not is_http_url(url):
            raise ValueError(f"Invalid product URL: {url!r}")

        canonical_url = normalize_url(url)
        product = await self.get_product_by_url(canonical_url)
        if product:
            return product, False

        product = Product(canonical_url=canonical_url)
        self.db.add(product)
        await self.db.flush()

        self.logger.info("product_created", product_id=str(product.id), url=canonical_url)
        return product, True

    async def get_product_snapshot(self, product_id: UUID) -> Optional[dict]:
        """Read a product's meta and price through the cache.

        A hit needs both the meta and the price snapshot. On a miss the
        product is loaded from the database and cached again, so an
        unpriced product always falls through to the database.

        Returns:
            Dict with product_id, the meta fields, price, last_checked and
            cached, or None when the product does not exist
        """
        if self.cache:
            meta = await self.cache.get_product_meta(product_id)
            price_data = await self.cache.get_product_price(product_id)
            if meta is not None and price_data is not None:
                return {"product_id": str(product_id), **meta, **price_data, "cached": True}

        product = await self.db.get(Product, product_id)
        if product is None:
            return None

        if self.cache:
            await self.cache.cache_product(product)

        price_data = product_price_snapshot(product) or {"price": None, "last_checked": None}
        return {
            "product_id": str(product.id),
            **product_meta_snapshot(product),
            **price_data,
            "cached": False,
        }

    async def enqueue_scrape_job(self, product_id: UUID) -> ScrapeJob:
        """Queue a scrape for a product.

        A product that already has a pending job keeps that job instead of
        getting a second one.

        Returns:
            The pending ScrapeJob
        """
        result = await self.db.execute(
            select(ScrapeJob).where(
                ScrapeJob.product_id == product_id,
                ScrapeJob.status == JobStatus.PENDING,
            )
        )
        existing = result.scalars().first()
        if existing:
            return existing

        job = ScrapeJob(product_id=product_id, status=JobStatus.PENDING, retry_count=0)
        self.db.add(job)
        await self.db.flush()

        self.logger.debug("scrape_job_enqueued", product_id=str(product_id), job_id=str(job.id))
        return job

    @staticmethod
    def needs_refresh(
        product: Product,
        max_age_minutes: int = settings.PRODUCT_REFRESH_MAX_AGE_MINUTES,
        now: Optional[datetime] = None,
    ) -> bool:
        """True when the product was never scraped or its data is stale."""
        if product.last_checked is None:
            return True
        now = now or utcnow()
        last_checked = product.last_checked
        # SQLite hands timestamps back naive
        if last_checked.tzinfo is None:
            last_checked = last_checked.replace(tzinfo=now.tzinfo)
        return now - last_checked > timedelta(minutes=max_age_minutes)

    async def upsert_watchlist_entry(
        self,
        user_id: str,
        product_id: UUID,
        target_price: Optional[Decimal] = None,
        notifications_enabled: Optional[bool] = None,
    ) -> WatchlistEntry:
        """Insert or update a (user, product) watchlist entry.

        On conflict the target price is replaced (None clears it) and
        updated_at is bumped. The user's cached sync summary is dropped so
        the next sync reflects the change.
        """
        result = await self.db.execute(
            select(WatchlistEntry).where(
                WatchlistEntry.user_id == user_id,
                WatchlistEntry.product_id == product_id,
            )
        )
        entry = result.scalar_one_or_none()

        if entry:
            entry.target_price = target_price
            if notifications_enabled is not None:
                entry.notifications_enabled = notifications_enabled
            entry.updated_at = utcnow()
            await self.db.flush()
            await self._invalidate_sync(user_id)
            return entry

        entry = WatchlistEntry(
            user_id=user_id,
            product_id=product_id,
            target_price=target_price,
            notifications_enabled=True if notifications_enabled is None else notifications_enabled,
        )
        self.db.add(entry)
        await self.db.flush()
        await self._invalidate_sync(user_id)
        return entry

    async def _invalidate_sync(self, user_id: str) -> None:
        if self.cache:
            await self.cache.invalidate_user_sync(user_id)

    async def sync_watchlist(self, user_id: str, items: List[dict]) -> dict:
        """Reconcile a user's watchlist with the list their client sent.

        Each item is a dict with "url" and optional "target_price". Unknown
        products are created and queued, stale ones are re-queued. The
        summary is cached per user; a cached summary is returned as-is.

        Args:
            user_id: Opaque user identity
            items: Products the user is watching

        Returns:
            Dict with user_id, products (per-item results), synced_at and cached
        """
        if self.cache:
            cached = await self.cache.get_user_sync(user_id)
            if cached:
                self.logger.debug("user_sync_cache_hit", user_id=user_id)
                return {**cached, "cached": True}

        results = []
        for item in items:
            url = item.get("url")
            try:
                results.append(await self._sync_item(user_id, url, item.get("target_price")))
            except ValueError as e:
                self.logger.error("sync_item_failed", user_id=user_id, url=url, error=str(e))
                results.append({"url": url, "status": SYNC_ERROR, "message": str(e)})

        await self.db.commit()

        summary = {
            "user_id": user_id,
            "products": results,
            "synced_at": utcnow(),
        }
        if self.cache:
            await self.cache.set_user_sync(user_id, summary)

        self.logger.info(
            "watchlist_synced",
            user_id=user_id,
            items=len(items),
            errors=sum(1 for r in results if r["status"] == SYNC_ERROR),
        )
        return {**summary, "cached": False}

    async def _sync_item(self, user_id: str, url: Optional[str], target_price) -> dict:
        # Validate before touching the session so a bad item leaves no partial rows
        if not is_http_url(url):
            raise ValueError(f"Invalid product URL: {url!r}")
        if target_price is not None:
            try:
                target_price = Decimal(str(target_price))
            except InvalidOperation:
                raise ValueError(f"Invalid target_price: {target_price!r}") from None
            if not target_price.is_finite() or target_price <= 0:
                raise ValueError("target_price must be positive")

        product, created = await self.get_or_create_product(url)

        if created:
            await self.enqueue_scrape_job(product.id)
            status = SYNC_CREATED
        elif self.needs_refresh(product):
            await self.enqueue_scrape_job(product.id)
            status = SYNC_QUEUED
        else:
            status = SYNC_CURRENT

        await self.upsert_watchlist_entry(user_id, product.id, target_price)

        return {
            "url": product.canonical_url,
            "product_id": product.id,
            "current_price": product.current_price,
            "currency": product.currency,
            "last_checked": product.last_checked,
            "status": status,
        }
