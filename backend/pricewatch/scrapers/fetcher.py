"""Page fetcher: Tor first, direct connection as fallback."""

from typing import Callable, Optional
from urllib.parse import urlparse

import httpx
import structlog

from pricewatch.config import settings
from pricewatch.core.exceptions import FetchError, ProxyError
from pricewatch.scrapers.utils.normalizer import is_http_url
from pricewatch.scrapers.utils.proxy_manager import CircuitManager, FetchedPage, send_page_request
from pricewatch.scrapers.utils.rate_limiter import DomainPacer
from pricewatch.scrapers.utils.user_agents import build_page_headers, get_random_user_agent

logger = structlog.get_logger(__name__)


class PageFetcher:
    """Fetches product pages with per-domain pacing and proxy fallback.

    Every fetch goes through the circuit manager first. If the proxy itself
    is unusable the page is fetched directly instead; a failure of the page
    request (timeout, bad status) is not retried on the direct path.
    """

    def __init__(
        self,
        circuit_manager: CircuitManager,
        pacer: DomainPacer,
        direct_timeout: float = settings.DIRECT_TIMEOUT_SECONDS,
        direct_transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent_factory: Callable[[], str] = get_random_user_agent,
    ):
        """Initialize page fetcher.

        Args:
            circuit_manager: Tor routing and circuit rotation
            pacer: Per-domain courtesy delay
            direct_timeout: Timeout in seconds for the direct fallback
            direct_transport: Optional pre-built transport for the direct path (tests)
            user_agent_factory: Returns the User-Agent for each fetch
        """
        self.circuit_manager = circuit_manager
        self.pacer = pacer
        self.direct_timeout = direct_timeout
        self._direct_transport = direct_transport
        self._user_agent_factory = user_agent_factory

        self.proxy_fetches = 0
        self.direct_fetches = 0
        self.logger = logger.bind(service="page_fetcher")

    async def fetch(self, url: str) -> FetchedPage:
        """Fetch one page.

        Args:
            url: Absolute http(s) product URL

        Returns:
            FetchedPage of the final (post-redirect) response

        Raises:
            FetchError: Invalid URL, timeout, redirect exhaustion, non-2xx,
                or the direct fallback failing to connect
        """
        if not is_http_url(url):
            raise FetchError(str(url), "only absolute http(s) URLs can be fetched")

        domain = urlparse(url).hostname.lower()
        await self.pacer.wait(domain)

        user_agent = self._user_agent_factory()
        try:
            return await self._fetch_via_proxy(url, user_agent)
        except ProxyError as e:
            self.logger.warning("proxy_unavailable_falling_back", url=url, error=str(e))
            return await self._fetch_direct(url, user_agent)
        finally:
            await self.pacer.mark(domain)

    async def _fetch_via_proxy(self, url: str, user_agent: str) -> FetchedPage:
        self.logger.debug("fetching_via_proxy", url=url)
        page = await self.circuit_manager.fetch_through_proxy(url, build_page_headers(user_agent, full=True))
        self.proxy_fetches += 1
        await self.circuit_manager.record_request()
        return page

    async def _fetch_direct(self, url: str, user_agent: str) -> FetchedPage:
        self.logger.debug("fetching_direct", url=url)
        try:
            page = await send_page_request(
                url,
                build_page_headers(user_agent, full=False),
                timeout=self.direct_timeout,
                transport=self._direct_transport,
            )
        except httpx.TransportError as e:
            raise FetchError(url, f"direct connection failed: {e or type(e).__name__}") from e

        self.direct_fetches += 1
        return page
