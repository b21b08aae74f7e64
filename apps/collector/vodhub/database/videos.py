"""
Database operations for canonical videos

All writes to a canonical row go through _write_with_retry: one transaction
per attempt, a fresh read each time, and a bounded number of attempts when a
concurrent writer wins (stale version or duplicate key).
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..errors import MergeConflict
from ..logging_config import get_logger
from ..models import CanonicalVideo, InvalidUrlReport, SourceConfig
from ..models.base import utcnow
from ..pipeline.merge import MergeResult, apply_merge, build_video, match_key, populated_fields
from ..pipeline.normalizer import NormalizedRecord
from ..pipeline.scoring import score

logger = get_logger(__name__)

T = TypeVar("T")


class KeyedLock:
    """One asyncio.Lock per key, discarded once nobody holds or waits for it"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ValidationWrite(BaseModel):
    """What a validator write changed on one row"""
    found: bool = True
    removed: List[str] = Field(default_factory=list)
    invalidated: bool = False
    score_before: int = 0
    score_after: int = 0


class VideoRepository:
    """Repository for canonical video database operations"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_attempts: Optional[int] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.MERGE_MAX_ATTEMPTS
        self.locks = locks or KeyedLock()

    async def _write_with_retry(
        self,
        key: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        async with self.locks.hold(key):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    async with self.session_factory() as session:
                        async with session.begin():
                            return await operation(session)
                except (StaleDataError, IntegrityError) as e:
                    logger.warning(
                        f"Write conflict on '{key}' (attempt {attempt}/{self.max_attempts}): {e.__class__.__name__}",
                        extra={"item_id": key}
                    )
        raise MergeConflict(key, self.max_attempts)

    async def reconcile(self, record: NormalizedRecord, source: SourceConfig) -> MergeResult:
        """
        Fold one normalized record into the catalog

        Creates the canonical row on first sighting of its (title, year),
        otherwise merges into the existing row in place.

        Raises:
            MergeConflict: concurrent writers kept winning for every attempt
        """
        key = match_key(record.title, record.year)

        async def merge(session: AsyncSession) -> MergeResult:
            result = await session.execute(
                select(CanonicalVideo).where(CanonicalVideo.match_key == key)
            )
            video = result.scalar_one_or_none()

            if video is None:
                video = build_video(record, source)
                session.add(video)
                return MergeResult(action="created", canonical_id=video.id, changed=populated_fields(video))

            changed = apply_merge(video, record, source)
            if changed:
                video.updated_at = utcnow()
            return MergeResult(action="updated", canonical_id=video.id, changed=changed)

        return await self._write_with_retry(key, merge)

    async def get(self, video_id: str) -> Optional[CanonicalVideo]:
        async with self.session_factory() as session:
            return await session.get(CanonicalVideo, video_id)

    async def find_by_title(self, title: str) -> Optional[CanonicalVideo]:
        """Best-effort lookup by title alone (highest score first)"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CanonicalVideo)
                .where(CanonicalVideo.title == title)
                .order_by(CanonicalVideo.quality_score.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(select(func.count(CanonicalVideo.id)))
            return result.scalar() or 0

    async def list_low_quality(self, threshold: int, limit: int = 100) -> List[CanonicalVideo]:
        """Videos scoring below the threshold, worst first"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CanonicalVideo)
                .where(CanonicalVideo.quality_score < threshold)
                .order_by(CanonicalVideo.quality_score.asc(), CanonicalVideo.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def select_for_validation(self, limit: int) -> List[CanonicalVideo]:
        """Valid videos, never-validated first, then least recently validated"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CanonicalVideo)
                .where(CanonicalVideo.is_valid.is_(True))
                .order_by(
                    CanonicalVideo.last_validated_at.is_not(None),
                    CanonicalVideo.last_validated_at,
                    CanonicalVideo.id,
                )
                .limit(limit)
            )
            return list(result.scalars().all())

    async def apply_validation(
        self,
        video: CanonicalVideo,
        failures: Dict[str, str],
        checked_at: Optional[datetime] = None,
    ) -> ValidationWrite:
        """
        Record a validation pass for one video

        Args:
            video: Snapshot the probes were run against
            failures: Route key -> error type for every route that failed its probe
            checked_at: Validation timestamp (defaults to now)

        A failed route is removed only if it still points at the probed URL;
        each removal leaves a system InvalidUrlReport behind.
        """
        probed_urls = {key: video.play_routes.get(key) for key in failures}
        checked_at = checked_at or utcnow()

        async def write(session: AsyncSession) -> ValidationWrite:
            current = await session.get(CanonicalVideo, video.id)
            if current is None:
                return ValidationWrite(found=False)

            score_before = current.quality_score
            routes = dict(current.play_routes or {})
            removed = [
                key for key, url in probed_urls.items()
                if url is not None and routes.get(key) == url
            ]
            for key in removed:
                del routes[key]
                session.add(InvalidUrlReport(
                    video_id=current.id,
                    video_title=current.title,
                    play_url=probed_urls[key],
                    error_type=failures[key],
                    reported_by="system",
                ))

            was_valid = current.is_valid
            if removed:
                current.play_routes = routes
                current.updated_at = checked_at
            if not routes:
                current.is_valid = False
            current.last_validated_at = checked_at
            current.quality_score = score(current)

            return ValidationWrite(
                removed=removed,
                invalidated=was_valid and not current.is_valid,
                score_before=score_before,
                score_after=current.quality_score,
            )

        return await self._write_with_retry(video.match_key, write)

    async def rescore(self, video: CanonicalVideo) -> bool:
        """Recompute one video's score; True when it changed"""

        async def write(session: AsyncSession) -> bool:
            current = await session.get(CanonicalVideo, video.id)
            if current is None:
                return False
            new_score = score(current)
            if new_score == current.quality_score:
                return False
            current.quality_score = new_score
            return True

        return await self._write_with_retry(video.match_key, write)

    async def rescore_all(self, batch_size: int = 500) -> int:
        """Recompute every score in the catalog; returns how many changed"""
        changed = 0
        last_id = ""
        while True:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CanonicalVideo)
                    .where(CanonicalVideo.id > last_id)
                    .order_by(CanonicalVideo.id)
                    .limit(batch_size)
                )
                batch = list(result.scalars().all())
            if not batch:
                break

            for video in batch:
                if score(video) != video.quality_score and await self.rescore(video):
                    changed += 1
            last_id = batch[-1].id

        logger.info(f"Rescored catalog: {changed} scores changed")
        return changed

    async def add_report(
        self,
        video_id: str,
        video_title: str,
        play_url: str,
        error_type: str,
        reported_by: str = "user",
    ) -> InvalidUrlReport:
        async with self.session_factory() as session:
            async with session.begin():
                report = InvalidUrlReport(
                    video_id=video_id,
                    video_title=video_title or "",
                    play_url=play_url,
                    error_type=error_type or "user_report",
                    reported_by=reported_by,
                )
                session.add(report)
            return report

    async def list_reports(self, video_id: Optional[str] = None, limit: int = 100) -> List[InvalidUrlReport]:
        async with self.session_factory() as session:
            stmt = select(InvalidUrlReport).order_by(InvalidUrlReport.created_at.desc()).limit(limit)
            if video_id:
                stmt = stmt.where(InvalidUrlReport.video_id == video_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())
