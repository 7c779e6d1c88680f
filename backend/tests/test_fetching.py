"""Tests for the circuit manager, Tor control client, pacer and page fetcher."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from pricewatch.core.exceptions import FetchError, ProxyError, TorControlError
from pricewatch.scrapers.fetcher import PageFetcher
from pricewatch.scrapers.utils.proxy_manager import CircuitManager, TorController
from pricewatch.scrapers.utils.rate_limiter import DomainPacer
from pricewatch.services.cache_service import domain_scrape_key


PAGE_URL = "https://www.amazon.com/dp/B000TEST01"


def ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="<html><h1>ok</h1></html>")


def proxy_down_handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("SOCKS proxy connection refused", request=request)


def make_circuit_manager(handler=ok_handler, threshold: int = 75) -> CircuitManager:
    controller = AsyncMock()
    return CircuitManager(
        proxy_url="socks5://tor.test:9050",
        controller=controller,
        rotation_threshold=threshold,
        transport=httpx.MockTransport(handler),
    )


class FakeClock:
    def __init__(self, now_ms: float = 1_000_000.0):
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms


class TestCircuitManager:
    """Tests for CircuitManager."""

    async def test_fetch_through_proxy(self):
        manager = make_circuit_manager()
        page = await manager.fetch_through_proxy(PAGE_URL, {"User-Agent": "test"})

        assert page.status_code == 200
        assert "ok" in page.body
        assert page.final_url == PAGE_URL

    async def test_proxy_connect_failure_raises_proxy_error(self):
        manager = make_circuit_manager(proxy_down_handler)

        with pytest.raises(ProxyError):
            await manager.fetch_through_proxy(PAGE_URL, {})

    async def test_timeout_raises_fetch_error(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        manager = make_circuit_manager(handler)

        with pytest.raises(FetchError):
            await manager.fetch_through_proxy(PAGE_URL, {})

    async def test_non_2xx_raises_fetch_error_with_status(self):
        manager = make_circuit_manager(lambda request: httpx.Response(503))

        with pytest.raises(FetchError) as exc_info:
            await manager.fetch_through_proxy(PAGE_URL, {})

        assert exc_info.value.status_code == 503

    async def test_follows_redirects(self):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(301, headers={"Location": "https://shop.example.com/new"})
            return httpx.Response(200, text="moved here")

        manager = make_circuit_manager(handler)
        page = await manager.fetch_through_proxy("https://shop.example.com/old", {})

        assert page.final_url == "https://shop.example.com/new"
        assert page.body == "moved here"

    async def test_rotation_at_threshold(self):
        manager = make_circuit_manager(threshold=3)

        results = [await manager.record_request() for _ in range(7)]

        assert results == [False, False, True, False, False, True, False]
        assert manager.controller.new_identity.await_count == 2
        assert manager.rotation_count == 2
        assert manager.request_count == 1
        assert manager.total_requests == 7

    async def test_concurrent_requests_rotate_exactly_once_per_threshold(self):
        manager = make_circuit_manager(threshold=75)

        await asyncio.gather(*(manager.record_request() for _ in range(150)))

        assert manager.controller.new_identity.await_count == 2
        assert manager.request_count == 0
        assert manager.total_requests == 150

    async def test_failed_rotation_is_not_raised(self):
        manager = make_circuit_manager(threshold=1)
        manager.controller.new_identity.side_effect = TorControlError("515 Authentication failed")

        rotated = await manager.record_request()

        assert rotated is True
        assert manager.rotation_count == 0
        assert manager.failed_rotations == 1
        assert manager.request_count == 0

    def test_get_stats(self):
        stats = make_circuit_manager().get_stats()

        assert stats["proxy_url"] == "socks5://tor.test:9050"
        assert stats["rotation_threshold"] == 75
        assert stats["total_requests"] == 0


class TestTorController:
    """Tests for TorController against a local fake control port."""

    async def _serve(self, replies):
        received = []

        async def handle(reader, writer):
            for reply in replies:
                line = await reader.readline()
                received.append(line.decode().strip())
                writer.write(f"{reply}\r\n".encode())
                await writer.drain()
            received.append((await reader.readline()).decode().strip())
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        return server, port, received

    async def test_new_identity(self):
        server, port, received = await self._serve(["250 OK", "250 OK"])
        async with server:
            await TorController("127.0.0.1", port, password="secret").new_identity()

        assert received[:2] == ['AUTHENTICATE "secret"', "SIGNAL NEWNYM"]

    async def test_rejected_authentication(self):
        server, port, _ = await self._serve(["515 Authentication failed"])
        async with server:
            with pytest.raises(TorControlError):
                await TorController("127.0.0.1", port).new_identity()


class TestDomainPacer:
    """Tests for DomainPacer."""

    async def test_no_wait_for_unseen_domain(self, memory_cache):
        sleep = AsyncMock()
        pacer = DomainPacer(memory_cache, delay_ms=2000, clock=FakeClock(), sleep=sleep)

        assert await pacer.wait("www.amazon.com") == 0.0
        sleep.assert_not_awaited()

    async def test_waits_remaining_delay(self, memory_cache):
        clock = FakeClock()
        sleep = AsyncMock()
        pacer = DomainPacer(memory_cache, delay_ms=2000, clock=clock, sleep=sleep)

        await pacer.mark("www.amazon.com")
        clock.now_ms += 500
        waited = await pacer.wait("www.amazon.com")

        assert waited == pytest.approx(1.5)
        sleep.assert_awaited_once_with(pytest.approx(1.5))

    async def test_no_wait_after_delay_elapsed(self, memory_cache):
        clock = FakeClock()
        sleep = AsyncMock()
        pacer = DomainPacer(memory_cache, delay_ms=2000, clock=clock, sleep=sleep)

        await pacer.mark("www.amazon.com")
        clock.now_ms += 2500

        assert await pacer.wait("www.amazon.com") == 0.0
        sleep.assert_not_awaited()


class TestPageFetcher:
    """Tests for PageFetcher."""

    def _fetcher(self, cache, proxy_handler=ok_handler, direct_handler=ok_handler):
        manager = make_circuit_manager(proxy_handler)
        pacer = DomainPacer(cache, delay_ms=0, sleep=AsyncMock())
        return PageFetcher(
            circuit_manager=manager,
            pacer=pacer,
            direct_transport=httpx.MockTransport(direct_handler),
            user_agent_factory=lambda: "pricewatch-test-agent",
        )

    async def test_fetch_via_proxy_counts_request(self, memory_cache):
        fetcher = self._fetcher(memory_cache)

        page = await fetcher.fetch(PAGE_URL)

        assert page.status_code == 200
        assert fetcher.proxy_fetches == 1
        assert fetcher.direct_fetches == 0
        assert fetcher.circuit_manager.total_requests == 1

    async def test_falls_back_to_direct_when_proxy_down(self, memory_cache):
        seen_agents = []

        def direct_handler(request):
            seen_agents.append(request.headers["User-Agent"])
            return httpx.Response(200, text="direct page")

        fetcher = self._fetcher(memory_cache, proxy_handler=proxy_down_handler, direct_handler=direct_handler)

        page = await fetcher.fetch(PAGE_URL)

        assert page.body == "direct page"
        assert fetcher.direct_fetches == 1
        assert seen_agents == ["pricewatch-test-agent"]
        # Direct fetches do not advance the rotation counter
        assert fetcher.circuit_manager.total_requests == 0

    async def test_timeout_does_not_fall_back(self, memory_cache):
        def slow_proxy(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        fetcher = self._fetcher(memory_cache, proxy_handler=slow_proxy)

        with pytest.raises(FetchError):
            await fetcher.fetch(PAGE_URL)

        assert fetcher.direct_fetches == 0

    async def test_direct_failure_raises_fetch_error(self, memory_cache):
        fetcher = self._fetcher(
            memory_cache,
            proxy_handler=proxy_down_handler,
            direct_handler=lambda request: httpx.Response(404),
        )

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(PAGE_URL)

        assert exc_info.value.status_code == 404

    async def test_domain_stamp_written_on_failure(self, memory_cache):
        fetcher = self._fetcher(memory_cache, proxy_handler=lambda request: httpx.Response(500))

        with pytest.raises(FetchError):
            await fetcher.fetch(PAGE_URL)

        assert domain_scrape_key("www.amazon.com") in memory_cache.store

    async def test_rejects_non_http_url(self, memory_cache):
        fetcher = self._fetcher(memory_cache)

        with pytest.raises(FetchError):
            await fetcher.fetch("file:///etc/passwd")
