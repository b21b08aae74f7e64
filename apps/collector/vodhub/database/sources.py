"""
Database operations for resource sites and their health
"""
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import settings
from ..errors import SourceNotFound
from ..logging_config import get_logger
from ..models import Source, SourceConfig, SourceHealth
from ..models.base import utcnow

logger = get_logger(__name__)


class SourceRegistry:
    """Repository for source sites and their rolling health"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        failure_threshold: Optional[int] = None,
        skip_unhealthy: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.failure_threshold = failure_threshold or settings.SOURCE_FAILURE_THRESHOLD
        self.skip_unhealthy = settings.SKIP_UNHEALTHY_SOURCES if skip_unhealthy is None else skip_unhealthy

    async def list_sources(self, enabled_only: bool = False) -> List[Source]:
        async with self.session_factory() as session:
            stmt = select(Source).order_by(Source.weight.desc(), Source.name)
            if enabled_only:
                stmt = stmt.where(Source.enabled.is_(True))
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def upsert_source(self, config: SourceConfig, enabled: bool = True) -> Source:
        """Create a source, or update the one with the same name"""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(select(Source).where(Source.name == config.name))
                source = result.scalar_one_or_none()
                if source is None:
                    source = Source(name=config.name)
                    session.add(source)

                source.url = config.url
                source.weight = config.weight
                source.source_type = config.source_type
                source.response_format = config.response_format
                source.timeout = config.timeout
                source.categories = list(config.categories)
                source.enabled = enabled

        logger.info(f"Registered source {config.name} ({config.source_type}, weight {config.weight})")
        return source

    async def get_config(self, name: str) -> SourceConfig:
        """
        Snapshot of one enabled source

        Raises:
            SourceNotFound: no enabled source with that name
        """
        async with self.session_factory() as session:
            source = (await session.execute(
                select(Source).where(Source.name == name, Source.enabled.is_(True))
            )).scalar_one_or_none()
        if source is None:
            raise SourceNotFound(f"No enabled source named '{name}'")
        return source.snapshot()

    async def list_for_collection(self, category: Optional[int] = None) -> Tuple[List[SourceConfig], List[str]]:
        """
        Sources a collection run should visit

        Returns:
            (runnable snapshots ordered by weight desc, names skipped as unhealthy)
        """
        snapshots = [s.snapshot() for s in await self.list_sources(enabled_only=True)]
        sources = [s for s in snapshots if s.serves_category(category)]
        if not self.skip_unhealthy:
            return sources, []

        unhealthy = {h.source_name for h in await self.list_health() if h.consecutive_failures >= self.failure_threshold}
        runnable = [s for s in sources if s.name not in unhealthy]
        skipped = [s.name for s in sources if s.name in unhealthy]
        if skipped:
            logger.warning(f"Skipping unhealthy sources: {', '.join(skipped)}")
        return runnable, skipped

    async def list_health(self) -> List[SourceHealth]:
        async with self.session_factory() as session:
            result = await session.execute(select(SourceHealth).order_by(SourceHealth.source_name))
            return list(result.scalars().all())

    async def record_health(self, source_name: str, success: bool, error: Optional[str] = None) -> SourceHealth:
        """Record the result of one collection run against a source"""
        async with self.session_factory() as session:
            async with session.begin():
                health = await session.get(SourceHealth, source_name)
                if health is None:
                    health = SourceHealth(source_name=source_name, consecutive_failures=0)
                    session.add(health)

                now = utcnow()
                if success:
                    health.consecutive_failures = 0
                    health.status = "healthy"
                    health.last_success_at = now
                else:
                    health.consecutive_failures = (health.consecutive_failures or 0) + 1
                    health.last_failure_at = now
                    health.last_error = error
                    health.status = "down" if health.consecutive_failures >= self.failure_threshold else "degraded"
        return health
