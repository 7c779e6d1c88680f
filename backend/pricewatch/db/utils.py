"""Database utility functions."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pricewatch.models import Base


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables and indexes that don't exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health(session_factory: async_sessionmaker[AsyncSession]) -> dict:
    """Check if database is accessible and responsive.

    Returns:
        dict with 'healthy' boolean and optional 'error' message
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
