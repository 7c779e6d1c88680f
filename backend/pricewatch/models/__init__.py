"""SQLAlchemy models for PriceWatch.

All models are imported here so metadata.create_all sees every table.
"""

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from pricewatch.models.product import Product
from pricewatch.models.price_history import PriceHistory, PRICE_SOURCES
from pricewatch.models.scrape_job import ScrapeJob, JobStatus
from pricewatch.models.watchlist import WatchlistEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "Product",
    "PriceHistory",
    "PRICE_SOURCES",
    "ScrapeJob",
    "JobStatus",
    "WatchlistEntry",
]
