"""Target-price notifications for watchers of a product."""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import List, Optional, Protocol
from uuid import UUID

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.config import settings
from pricewatch.models.product import Product
from pricewatch.models.watchlist import WatchlistEntry

logger = structlog.get_logger(__name__)


@dataclass
class NotificationPayload:
    """What a watcher is told when a product reaches their target price."""

    product_id: UUID
    product_title: Optional[str]
    product_url: str
    target_price: Decimal
    current_price: Decimal
    currency: str = "USD"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["product_id"] = str(self.product_id)
        data["target_price"] = str(self.target_price)
        data["current_price"] = str(self.current_price)
        return data


class NotificationSender(Protocol):
    """Delivers one notification to one recipient."""

    async def send(self, recipient: str, payload: NotificationPayload) -> None:
        ...


class LogNotificationSender:
    """Sender that only logs. Used when no delivery channel is configured."""

    def __init__(self):
        self.logger = logger.bind(service="log_notification_sender")

    async def send(self, recipient: str, payload: NotificationPayload) -> None:
        self.logger.info("price_alert_notification", user_id=recipient, **payload.to_dict())


class WebhookNotificationSender:
    """POSTs each notification as JSON to a fixed webhook URL."""

    DELIVERY_TIMEOUT = 10.0

    def __init__(self, webhook_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_url = webhook_url
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self.logger = logger.bind(service="webhook_notification_sender")

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.DELIVERY_TIMEOUT),
                headers={"User-Agent": "PriceWatch-Notifier/1.0"},
                transport=self._transport,
            )
        return self._http_client

    async def send(self, recipient: str, payload: NotificationPayload) -> None:
        """Deliver one notification.

        Raises:
            httpx.HTTPError: On connection failure or non-2xx response
        """
        client = await self._get_http_client()
        response = await client.post(
            self.webhook_url,
            json={"user_id": recipient, "type": "price_alert", **payload.to_dict()},
        )
        response.raise_for_status()
        self.logger.debug("webhook_delivered", user_id=recipient, status_code=response.status_code)

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


def build_default_sender() -> NotificationSender:
    """Webhook sender when NOTIFICATION_WEBHOOK_URL is set, else log-only."""
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationSender(settings.NOTIFICATION_WEBHOOK_URL)
    return LogNotificationSender()


class NotificationService:
    """Finds watchers whose target price is met and notifies each one.

    By default a watcher is notified on every scrape where the price is at
    or below their target, so an unchanged low price notifies again. With
    crossing_only the notification is sent only when the previous price was
    unknown or above the target.
    """

    def __init__(
        self,
        sender: Optional[NotificationSender] = None,
        crossing_only: bool = settings.NOTIFY_ON_THRESHOLD_CROSSING_ONLY,
    ):
        self.sender = sender or build_default_sender()
        self.crossing_only = crossing_only
        self.logger = logger.bind(service="notification_service")

    async def get_triggered_entries(self, db: AsyncSession, product: Product) -> List[WatchlistEntry]:
        """Enabled watchlist entries whose target is met by the current price."""
        if product.current_price is None:
            return []

        result = await db.execute(
            select(WatchlistEntry)
            .where(
                WatchlistEntry.product_id == product.id,
                WatchlistEntry.notifications_enabled.is_(True),
                WatchlistEntry.target_price.is_not(None),
                WatchlistEntry.target_price >= product.current_price,
            )
            .order_by(WatchlistEntry.created_at)
        )
        return list(result.scalars().all())

    async def notify_watchers(
        self,
        db: AsyncSession,
        product: Product,
        previous_price: Optional[Decimal] = None,
    ) -> int:
        """Send target-price notifications for a freshly updated product.

        Args:
            db: Async database session
            product: Product after the scrape was applied
            previous_price: current_price before the scrape

        Returns:
            Number of notifications delivered
        """
        entries = await self.get_triggered_entries(db, product)
        delivered = 0

        for entry in entries:
            if self.crossing_only and previous_price is not None and previous_price <= entry.target_price:
                self.logger.debug(
                    "notification_suppressed_already_below_target",
                    user_id=entry.user_id,
                    product_id=str(product.id),
                )
                continue

            payload = NotificationPayload(
                product_id=product.id,
                product_title=product.title,
                product_url=product.canonical_url,
                target_price=entry.target_price,
                current_price=product.current_price,
                currency=product.currency,
            )
            try:
                await self.sender.send(entry.user_id, payload)
            except Exception as e:
                # Delivery is fire-and-forget; a failed send never fails the scrape.
                self.logger.error(
                    "notification_send_failed",
                    user_id=entry.user_id,
                    product_id=str(product.id),
                    error=str(e),
                    exc_info=True,
                )
                continue
            delivered += 1

        if entries:
            self.logger.info(
                "watchers_notified",
                product_id=str(product.id),
                triggered=len(entries),
                delivered=delivered,
            )
        return delivered
