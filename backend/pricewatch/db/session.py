"""Async database session and engine configuration."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from pricewatch.config import settings


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend.

    Args:
        database_url: SQLAlchemy async URL (asyncpg or aiosqlite)
        echo: Log emitted SQL

    Returns:
        Configured AsyncEngine
    """
    engine_kwargs: dict = {"echo": echo}
    # SQLite doesn't support pool_size / max_overflow / pool_pre_ping
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(database_url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory shared by the queue and services."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)

async_session_factory = create_session_factory(engine)
