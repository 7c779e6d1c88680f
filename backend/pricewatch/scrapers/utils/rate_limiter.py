"""Per-domain courtesy pacing backed by the cache."""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from pricewatch.services.cache_service import CacheService

logger = structlog.get_logger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class DomainPacer:
    """Spaces out requests to the same domain.

    The last-scrape time of each domain lives in the cache, so pacing
    survives worker restarts and is shared between worker processes.
    This is a courtesy delay rather than a lock: two jobs for the same
    domain scheduled in one chunk may still overlap.
    """

    def __init__(
        self,
        cache: CacheService,
        delay_ms: int,
        clock: Callable[[], float] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize pacer.

        Args:
            cache: Cache service holding domain:scrape:* stamps
            delay_ms: Minimum spacing between requests to one domain
            clock: Returns current time in epoch milliseconds
            sleep: Async sleep taking seconds
        """
        self.cache = cache
        self.delay_ms = delay_ms
        self._clock = clock
        self._sleep = sleep

    async def wait(self, domain: str) -> float:
        """Sleep until the domain's pacing delay has elapsed.

        Args:
            domain: Hostname about to be fetched

        Returns:
            Seconds slept (0.0 when no wait was needed)
        """
        last_scrape: Optional[float] = await self.cache.get_domain_last_scrape(domain)
        if last_scrape is None:
            return 0.0

        elapsed = self._clock() - last_scrape
        if elapsed >= self.delay_ms:
            return 0.0

        wait_seconds = (self.delay_ms - elapsed) / 1000.0
        logger.debug("domain_pacing_wait", domain=domain, wait_seconds=round(wait_seconds, 3))
        await self._sleep(wait_seconds)
        return wait_seconds

    async def mark(self, domain: str) -> None:
        """Record that the domain was just scraped."""
        await self.cache.set_domain_last_scrape(domain, self._clock())
