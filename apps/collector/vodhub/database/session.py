"""
Engine and session factory for the catalog database
"""
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import settings
from ..logging_config import get_logger
from ..models import Base

logger = get_logger(__name__)


class Database:
    """Owns the async engine and hands out sessions"""

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url or settings.async_database_url
        engine_kwargs = {"echo": echo}
        if not self.url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_timeout=settings.DB_POOL_TIMEOUT,
                pool_pre_ping=True,
            )
        self.engine: AsyncEngine = create_async_engine(self.url, **engine_kwargs)
        # Rows are read back after commit without a round trip
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_tables(self):
        """Create all tables (tests and first-run setups; production uses Alembic)"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self):
        await self.engine.dispose()


_database: Optional[Database] = None


def get_database() -> Database:
    """Process-wide database, created on first use"""
    global _database
    if _database is None:
        _database = Database()
    return _database
