"""Redis caching service for product snapshots and scrape pacing.

Every operation is best-effort: a Redis outage, a bad connection URL or an
undecodable value is reported to callers as a cache miss, never as an exception.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from redis.asyncio import Redis, from_url
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.models.product import Product
from pricewatch.models.watchlist import WatchlistEntry

logger = structlog.get_logger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def product_price_key(product_id: UUID) -> str:
    return f"product:price:{product_id}"


def product_meta_key(product_id: UUID) -> str:
    return f"product:meta:{product_id}"


def user_sync_key(user_id: str) -> str:
    return f"api:sync:{user_id}"


def domain_scrape_key(domain: str) -> str:
    return f"domain:scrape:{domain}"


def product_meta_snapshot(product: Product) -> dict:
    """Cached shape of a product's descriptive fields."""
    return {
        "title": product.title,
        "image_url": product.image_url,
        "canonical_url": product.canonical_url,
        "currency": product.currency,
    }


def product_price_snapshot(product: Product) -> Optional[dict]:
    """Cached shape of a product's price, or None when it has no price."""
    if product.current_price is None:
        return None
    return {
        "price": str(product.current_price),
        "currency": product.currency,
        "last_checked": product.last_checked.isoformat() if product.last_checked else None,
    }


class CacheService:
    """Async Redis cache service.

    Provides key-value caching with TTL plus typed helpers for the four
    key classes the scraper uses (price, meta, domain pacing, user sync).
    """

    def __init__(
        self,
        redis_url: str,
        price_ttl: int = settings.PRICE_CACHE_TTL,
        meta_ttl: int = settings.PRODUCT_META_CACHE_TTL,
        sync_ttl: int = settings.API_CACHE_TTL,
        domain_ttl: int = settings.DOMAIN_SCRAPE_TTL,
    ):
        """Initialize cache service.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            price_ttl: TTL in seconds for product price snapshots
            meta_ttl: TTL in seconds for product metadata snapshots
            sync_ttl: TTL in seconds for per-user sync summaries
            domain_ttl: TTL in seconds for per-domain last-scrape stamps
        """
        self.redis_url = redis_url
        self.price_ttl = price_ttl
        self.meta_ttl = meta_ttl
        self.sync_ttl = sync_ttl
        self.domain_ttl = domain_ttl
        self._redis: Optional[Redis] = None
        self.logger = logger.bind(service="cache_service")

    async def _get_redis(self) -> Redis:
        """Get or create Redis connection.

        Returns:
            Redis client instance
        """
        if self._redis is None:
            self._redis = from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            self.logger.info("redis_connection_created", url=self.redis_url)

        return self._redis

    async def get(self, key: str) -> Optional[str]:
        """Get a value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value as string, or None if not found or error
        """
        try:
            redis = await self._get_redis()
            value = await redis.get(key)

            if value:
                self.logger.debug("cache_hit", key=key)
            else:
                self.logger.debug("cache_miss", key=key)

            return value

        except Exception as e:
            self.logger.error(
                "cache_get_failed",
                key=key,
                error=str(e),
            )
            return None

    async def set(self, key: str, value: str, ttl: int = 300) -> bool:
        """Set a value in cache with TTL.

        Args:
            key: Cache key
            value: Value to cache (string)
            ttl: Time-to-live in seconds (default: 300 = 5 minutes)

        Returns:
            True if successful, False on error
        """
        try:
            redis = await self._get_redis()
            await redis.set(key, value, ex=ttl)

            self.logger.debug(
                "cache_set",
                key=key,
                ttl=ttl,
                value_length=len(value),
            )

            return True

        except Exception as e:
            self.logger.error(
                "cache_set_failed",
                key=key,
                error=str(e),
            )
            return False

    async def delete(self, key: str) -> bool:
        """Delete a key from cache.

        Args:
            key: Cache key to delete

        Returns:
            True if key was deleted, False if not found or error
        """
        try:
            redis = await self._get_redis()
            result = await redis.delete(key)

            self.logger.debug("cache_delete", key=key, deleted=bool(result))

            return bool(result)

        except Exception as e:
            self.logger.error(
                "cache_delete_failed",
                key=key,
                error=str(e),
            )
            return False

    async def get_json(self, key: str) -> Optional[Any]:
        """Get and decode a JSON value; undecodable data counts as a miss."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            self.logger.warning("cache_value_undecodable", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> bool:
        """Encode a value as JSON and store it."""
        try:
            payload = json.dumps(value, default=_json_default)
        except (TypeError, ValueError) as e:
            self.logger.error("cache_value_unencodable", key=key, error=str(e))
            return False
        return await self.set(key, payload, ttl=ttl)

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def get_product_price(self, product_id: UUID) -> Optional[dict]:
        return await self.get_json(product_price_key(product_id))

    async def set_product_price(self, product_id: UUID, price_data: dict) -> bool:
        return await self.set_json(product_price_key(product_id), price_data, ttl=self.price_ttl)

    async def get_product_meta(self, product_id: UUID) -> Optional[dict]:
        return await self.get_json(product_meta_key(product_id))

    async def set_product_meta(self, product_id: UUID, meta_data: dict) -> bool:
        return await self.set_json(product_meta_key(product_id), meta_data, ttl=self.meta_ttl)

    async def cache_product(self, product: Product) -> None:
        """Store the meta snapshot and, when priced, the price snapshot."""
        await self.set_product_meta(product.id, product_meta_snapshot(product))
        price_data = product_price_snapshot(product)
        if price_data is not None:
            await self.set_product_price(product.id, price_data)

    async def get_user_sync(self, user_id: str) -> Optional[dict]:
        return await self.get_json(user_sync_key(user_id))

    async def set_user_sync(self, user_id: str, sync_data: dict) -> bool:
        return await self.set_json(user_sync_key(user_id), sync_data, ttl=self.sync_ttl)

    async def invalidate_user_sync(self, user_id: str) -> bool:
        return await self.delete(user_sync_key(user_id))

    async def get_domain_last_scrape(self, domain: str) -> Optional[float]:
        """Epoch milliseconds of the last scrape of a domain, or None."""
        raw = await self.get(domain_scrape_key(domain))
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            self.logger.warning("domain_stamp_undecodable", domain=domain, value=raw)
            return None

    async def set_domain_last_scrape(self, domain: str, timestamp_ms: float) -> bool:
        return await self.set(domain_scrape_key(domain), str(int(timestamp_ms)), ttl=self.domain_ttl)

    async def warm_cache(self, db: AsyncSession, limit: int = 100) -> int:
        """Preload snapshots for the most-watched recently checked products.

        Args:
            db: Async database session
            limit: Maximum number of products to cache

        Returns:
            Number of products cached
        """
        self.logger.info("cache_warming_started", limit=limit)

        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        result = await db.execute(
            select(Product)
            .join(WatchlistEntry, WatchlistEntry.product_id == Product.id)
            .where(Product.last_checked > cutoff)
            .group_by(Product.id)
            .order_by(func.count(WatchlistEntry.id).desc())
            .limit(limit)
        )
        products = list(result.scalars().all())

        for product in products:
            await self.cache_product(product)

        self.logger.info("cache_warming_completed", products_cached=len(products))
        return len(products)

    async def health_check(self) -> bool:
        """Check Redis connectivity.

        Returns:
            True if Redis is healthy, False otherwise
        """
        try:
            redis = await self._get_redis()
            await redis.ping()
            self.logger.debug("redis_health_check_ok")
            return True

        except Exception as e:
            self.logger.error(
                "redis_health_check_failed",
                error=str(e),
            )
            return False

    async def close(self) -> None:
        """Close Redis connection.

        This should be called on worker shutdown.
        """
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("redis_connection_closed")


# Global cache instance
_cache_instance: Optional[CacheService] = None


def get_cache_service() -> CacheService:
    """Get or create the global cache service instance.

    Returns:
        CacheService instance
    """
    global _cache_instance

    if _cache_instance is None:
        _cache_instance = CacheService(settings.REDIS_URL)
        logger.info("cache_service_initialized", redis_url=settings.REDIS_URL)

    return _cache_instance
