"""Product model keyed by canonical URL."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, Numeric, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.price_history import PriceHistory
    from pricewatch.models.scrape_job import ScrapeJob
    from pricewatch.models.watchlist import WatchlistEntry


class Product(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A product page tracked by at least one user.

    Created on first reference (sync, manual add, price check) with only
    the canonical URL set; the remaining fields are filled in by scrapes.
    """

    __tablename__ = "products"

    canonical_url: Mapped[str] = mapped_column(
        String(2048),
        unique=True,
        nullable=False,
        index=True,
        comment="Deduplication key for the product",
    )

    title: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    current_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2),
        nullable=True,
        comment="Latest scraped price; NULL when the last scrape found none",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    last_checked: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Last time a scrape completed for this product",
    )

    # Relationships
    price_history: Mapped[list["PriceHistory"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PriceHistory.scraped_at.desc()",
    )
    scrape_jobs: Mapped[list["ScrapeJob"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    watchers: Mapped[list["WatchlistEntry"]] = relationship(
        back_populates="product",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, url='{self.canonical_url[:60]}', price={self.current_price})>"
