"""Price history tracking for products."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import String, ForeignKey, Numeric, DateTime, Index, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from pricewatch.models.product import Product


PRICE_SOURCES = ("scraper", "backend", "manual", "local")


class PriceHistory(UUIDPrimaryKeyMixin, Base):
    """Append-only record of a known price for a product.

    Rows are only ever written for a positive price and are removed
    solely by retention cleanup.
    """

    __tablename__ = "price_history"

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )

    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, comment="Price at this point in time")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="scraper",
        comment="Source of price data: 'scraper', 'backend', 'manual', 'local'",
    )

    scraped_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="When this price was observed",
    )

    __table_args__ = (
        Index("idx_price_history_product_date", "product_id", "scraped_at"),
        CheckConstraint("price > 0", name="ck_price_history_price_positive"),
    )

    product: Mapped["Product"] = relationship(back_populates="price_history")

    def __repr__(self) -> str:
        return f"<PriceHistory(product_id={self.product_id}, price={self.price}, scraped_at={self.scraped_at})>"
