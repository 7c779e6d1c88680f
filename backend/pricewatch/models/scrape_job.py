"""Scrape job tracking."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, Text, ForeignKey, Integer, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pricewatch.models.base import Base, UUIDPrimaryKeyMixin, utcnow

if TYPE_CHECKING:
    from pricewatch.models.product import Product


class JobStatus:
    """Allowed values of ScrapeJob.status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    FINISHED = (COMPLETED, FAILED)


class ScrapeJob(UUIDPrimaryKeyMixin, Base):
    """One attempt to scrape one product.

    Lifecycle: pending -> running -> completed | failed. A failed job is
    never reused; a retry is a new pending row for the same product.
    """

    __tablename__ = "scrape_jobs"

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobStatus.PENDING,
        comment="Status: 'pending', 'running', 'completed', 'failed'",
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Retries already consumed by this job's lineage",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Error message if job failed",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the job was claimed by a worker",
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the job finished (success or failure)",
    )

    __table_args__ = (
        Index("idx_scrape_jobs_status", "status", "created_at"),
    )

    product: Mapped["Product"] = relationship(back_populates="scrape_jobs")

    def __repr__(self) -> str:
        return (
            f"<ScrapeJob(id={self.id}, product_id={self.product_id}, status='{self.status}', "
            f"retry_count={self.retry_count})>"
        )
