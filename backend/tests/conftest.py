"""Pytest configuration and shared fixtures."""

from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from pricewatch.db.session import create_session_factory
from pricewatch.db.utils import create_schema
from pricewatch.models import Product
from pricewatch.services.cache_service import CacheService
from pricewatch.services.notification_service import NotificationPayload


class InMemoryCache(CacheService):
    """CacheService whose key-value backend is a dict instead of Redis."""

    def __init__(self):
        super().__init__("redis://unused:6379/0")
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def set(self, key: str, value: str, ttl: int = 300) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.store.pop(key, None) is not None


class RecordingSender:
    """Notification sender that keeps every call."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, NotificationPayload]] = []

    async def send(self, recipient: str, payload: NotificationPayload) -> None:
        if self.fail:
            raise RuntimeError("push gateway unavailable")
        self.sent.append((recipient, payload))


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """File-backed SQLite database.

    A file (not :memory:) with NullPool gives every session its own
    connection, so concurrent jobs behave like they do on Postgres.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pricewatch-test.db'}",
        poolclass=NullPool,
        echo=False,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest_asyncio.fixture
async def test_db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def memory_cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def recording_sender() -> RecordingSender:
    return RecordingSender()


@pytest_asyncio.fixture
async def sample_product(test_db: AsyncSession) -> Product:
    """A product that has been scraped once before."""
    product = Product(
        canonical_url="https://www.amazon.com/dp/B000TEST01",
        title="Old Widget Title",
        image_url="https://m.media-amazon.com/images/old.jpg",
        current_price=Decimal("60.00"),
        currency="USD",
    )
    test_db.add(product)
    await test_db.commit()
    await test_db.refresh(product)
    return product
