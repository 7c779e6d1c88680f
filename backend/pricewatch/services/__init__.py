"""Services module for persistence, caching and notification logic.

Services that depend on the scraper package (price updates, product
intake, maintenance) are imported from their own modules.
"""

from pricewatch.services.cache_service import CacheService, get_cache_service
from pricewatch.services.notification_service import (
    NotificationService,
    NotificationPayload,
    NotificationSender,
    LogNotificationSender,
    WebhookNotificationSender,
)

__all__ = [
    "CacheService",
    "get_cache_service",
    "NotificationService",
    "NotificationPayload",
    "NotificationSender",
    "LogNotificationSender",
    "WebhookNotificationSender",
]
