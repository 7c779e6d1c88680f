"""Tor circuit manager: proxied page fetches and periodic identity rotation."""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
import structlog

from pricewatch.config import settings
from pricewatch.core.exceptions import FetchError, ProxyError, TorControlError
from pricewatch.scrapers.utils.retry import control_retry

logger = structlog.get_logger(__name__)


@dataclass
class FetchedPage:
    """Raw HTTP result of a page fetch."""

    status_code: int
    body: str
    final_url: str


async def send_page_request(
    url: str,
    headers: Dict[str, str],
    timeout: float,
    proxy: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FetchedPage:
    """GET a page, following redirects, and require a 2xx final response.

    Args:
        url: Absolute page URL
        headers: Request headers
        timeout: Whole-request timeout in seconds
        proxy: Proxy URL; None for a direct connection
        transport: Pre-built transport, used instead of opening a connection

    Returns:
        FetchedPage with decoded body

    Raises:
        FetchError: On timeout, redirect exhaustion or non-2xx status
        httpx.TransportError: On connection-level failures (caller maps these)
    """
    client_kwargs: dict = {
        "headers": headers,
        "timeout": httpx.Timeout(timeout),
        "follow_redirects": True,
    }
    if transport is not None:
        client_kwargs["transport"] = transport
    elif proxy is not None:
        client_kwargs["proxy"] = proxy

    async with httpx.AsyncClient(**client_kwargs) as client:
        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(url, f"timed out after {timeout}s") from e
        except httpx.TooManyRedirects as e:
            raise FetchError(url, "too many redirects") from e

    if not response.is_success:
        raise FetchError(url, response.reason_phrase or "unexpected status", status_code=response.status_code)

    return FetchedPage(
        status_code=response.status_code,
        body=response.text,
        final_url=str(response.url),
    )


class TorController:
    """Minimal client for the Tor control port.

    Speaks just enough of the control protocol to request a new circuit:
    AUTHENTICATE, SIGNAL NEWNYM, QUIT.
    """

    def __init__(self, host: str, port: int, password: str = "", timeout: float = 5.0):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout

    async def _command(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, command: str) -> str:
        writer.write(f"{command}\r\n".encode())
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout=self.timeout)
        reply = line.decode(errors="replace").strip()
        if not reply.startswith("250"):
            verb = command.split(" ", 1)[0]
            raise TorControlError(f"Tor control rejected {verb}: {reply or 'no reply'}")
        return reply

    @control_retry
    async def new_identity(self) -> None:
        """Ask Tor for a fresh circuit.

        Raises:
            TorControlError: If authentication or the signal is rejected
            OSError: If the control port is unreachable
        """
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=self.timeout
        )
        try:
            await self._command(reader, writer, f'AUTHENTICATE "{self.password}"')
            await self._command(reader, writer, "SIGNAL NEWNYM")
            writer.write(b"QUIT\r\n")
            await writer.drain()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass


class CircuitManager:
    """Routes fetches through Tor and rotates the circuit every N requests.

    The request counter is the only state shared between concurrent jobs;
    increment-and-compare runs under an asyncio.Lock so that crossing the
    threshold triggers exactly one rotation.
    """

    def __init__(
        self,
        proxy_url: str = settings.tor_proxy_url,
        controller: Optional[TorController] = None,
        rotation_threshold: int = settings.CIRCUIT_ROTATION_REQUESTS,
        timeout: float = settings.PROXY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize circuit manager.

        Args:
            proxy_url: SOCKS5 URL of the Tor proxy
            controller: Control-port client; built from settings when omitted
            rotation_threshold: Successful requests between rotations
            timeout: Proxied request timeout in seconds
            transport: Optional pre-built httpx transport (tests)
        """
        self.proxy_url = proxy_url
        self.controller = controller or TorController(
            settings.TOR_PROXY_HOST,
            settings.TOR_CONTROL_PORT,
            settings.TOR_CONTROL_PASSWORD,
        )
        self.rotation_threshold = rotation_threshold
        self.timeout = timeout
        self._transport = transport

        self.request_count = 0
        self.total_requests = 0
        self.rotation_count = 0
        self.failed_rotations = 0
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="circuit_manager")

    async def fetch_through_proxy(self, url: str, headers: Dict[str, str]) -> FetchedPage:
        """Fetch a page through the Tor proxy.

        Raises:
            ProxyError: The proxy could not carry the request
            FetchError: The request went through but failed (timeout, status)
        """
        try:
            return await send_page_request(
                url,
                headers,
                timeout=self.timeout,
                proxy=self.proxy_url,
                transport=self._transport,
            )
        except (httpx.ProxyError, httpx.ConnectError) as e:
            raise ProxyError(url, str(e) or type(e).__name__) from e
        except httpx.TransportError as e:
            raise FetchError(url, str(e) or type(e).__name__) from e

    async def record_request(self) -> bool:
        """Count one successful proxied request.

        Returns:
            True if this request triggered a circuit rotation
        """
        async with self._lock:
            self.request_count += 1
            self.total_requests += 1
            should_rotate = self.request_count >= self.rotation_threshold
            if should_rotate:
                self.request_count = 0

        if should_rotate:
            await self.rotate_circuit()
        return should_rotate

    async def rotate_circuit(self) -> bool:
        """Request a new Tor circuit. Never raises.

        Returns:
            True if Tor acknowledged the rotation
        """
        try:
            await self.controller.new_identity()
        except (TorControlError, OSError, asyncio.TimeoutError) as e:
            self.failed_rotations += 1
            self.logger.warning("circuit_rotation_failed", error=str(e) or type(e).__name__)
            return False

        self.rotation_count += 1
        self.logger.info("circuit_rotated", rotation_count=self.rotation_count)
        return True

    def get_stats(self) -> dict:
        return {
            "proxy_url": self.proxy_url,
            "request_count": self.request_count,
            "total_requests": self.total_requests,
            "rotation_count": self.rotation_count,
            "failed_rotations": self.failed_rotations,
            "rotation_threshold": self.rotation_threshold,
        }
