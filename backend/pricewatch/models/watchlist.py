"""WatchlistEntry model linking users to tracked products."""

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import ForeignKey, Numeric, Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from pricewatch.models.product import Product


class WatchlistEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A user's subscription to a product, with an optional price target."""

    __tablename__ = "user_watchlist"

    user_id: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True,
        comment="Opaque user identity from the client",
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True,
        comment="Notify when price drops to or below this",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_watchlist_user_product"),
    )

    product: Mapped["Product"] = relationship(back_populates="watchers")

    def __repr__(self) -> str:
        return f"<WatchlistEntry(user={self.user_id}, product={self.product_id}, target={self.target_price})>"
