"""
Playback URL validator

Re-checks stored playback routes, retires the dead ones and soft-invalidates
videos left without any route. Rows are never deleted.
"""
import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database import Database, ValidationWrite, VideoRepository
from ..errors import CollectorError, ValidationProbeFailure
from ..logging_config import PerformanceLogger, get_logger
from ..models import CanonicalVideo
from ..pipeline.scoring import is_low_quality
from ..scraper.core import RETRYABLE_ERRORS, RetryPolicy, SourceSession, call_with_retry

logger = get_logger(__name__)


def classify_probe_error(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    if isinstance(error, aiohttp.ClientResponseError):
        return f"http_{error.status}"
    return "unreachable"


class UrlValidator:
    """Probes playback routes and writes validity back to the catalog"""

    def __init__(
        self,
        database: Database,
        session: Optional[SourceSession] = None,
        policy: Optional[RetryPolicy] = None,
        config: Optional[Dict[str, Any]] = None,
        videos: Optional[VideoRepository] = None,
    ):
        self.config = config or settings.get_validator_config()
        self.policy = policy or RetryPolicy(
            max_retries=self.config["max_retries"],
            backoff=settings.SOURCE_RETRY_BACKOFF,
        )
        self.videos = videos or VideoRepository(database.session_factory)
        self._owns_session = session is None
        self.session = session or SourceSession()
        self._probe_slots = asyncio.Semaphore(self.config["concurrency"])

    async def __aenter__(self):
        await self.session.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_session:
            await self.session.close()

    async def check_url(self, url: str) -> None:
        """
        Probe one playback URL

        Raises:
            ValidationProbeFailure: the URL failed every attempt
        """
        async with self._probe_slots:
            try:
                await call_with_retry(
                    lambda: self.session.probe(url, self.config["timeout"]),
                    self.policy,
                    description=f"probe {url}",
                )
            except RETRYABLE_ERRORS as e:
                raise ValidationProbeFailure(url, classify_probe_error(e)) from e

    async def validate_video(
        self,
        video: CanonicalVideo,
        route_keys: Optional[List[str]] = None,
    ) -> ValidationWrite:
        """Probe a video's routes (all, or just route_keys) and record the result"""
        routes = dict(video.play_routes or {})
        if route_keys is not None:
            routes = {key: url for key, url in routes.items() if key in route_keys}

        failures: Dict[str, str] = {}

        async def check(key: str, url: str):
            try:
                await self.check_url(url)
            except ValidationProbeFailure as e:
                failures[key] = e.reason
                logger.info(f"Route {key} of '{video.title}' failed: {e.reason}", extra={"item_id": video.id})

        await asyncio.gather(*[check(key, url) for key, url in routes.items()])
        return await self.videos.apply_validation(video, failures)

    async def validate_batch(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Validate the least recently checked valid videos

        Returns:
            Counts: checked, valid, invalidated, routes_removed, low_quality, errors
        """
        limit = limit or settings.VALIDATOR_BATCH_LIMIT
        stats = {"checked": 0, "valid": 0, "invalidated": 0, "routes_removed": 0, "low_quality": 0, "errors": 0}

        async def validate(video: CanonicalVideo) -> Optional[ValidationWrite]:
            try:
                return await self.validate_video(video)
            except (CollectorError, SQLAlchemyError) as e:
                logger.error(f"Validation of '{video.title}' failed: {e}", extra={"item_id": video.id})
                return None

        with PerformanceLogger(logger, "validate_batch", limit=limit):
            videos = await self.videos.select_for_validation(limit)
            writes = await asyncio.gather(*[validate(video) for video in videos])

            for write in writes:
                if write is None:
                    stats["errors"] += 1
                    continue
                if not write.found:
                    continue
                stats["checked"] += 1
                stats["routes_removed"] += len(write.removed)
                if write.invalidated:
                    stats["invalidated"] += 1
                else:
                    stats["valid"] += 1
                if is_low_quality(write.score_after, settings.LOW_QUALITY_THRESHOLD):
                    stats["low_quality"] += 1

        logger.info(f"Validation batch done: {stats}", extra={"extra_fields": stats})
        return stats

    async def report_invalid_url(
        self,
        vod_id: str,
        vod_name: str,
        play_url: str,
        error_type: str,
    ) -> Dict[str, Any]:
        """
        Store a user report and immediately check the reported video

        Only the reported route is probed when it can be found; otherwise every
        route of the video is.
        """
        vod_id = str(vod_id or "")
        video = await self.videos.get(vod_id) if vod_id else None
        if video is None and vod_name:
            video = await self.videos.find_by_title(vod_name)

        await self.videos.add_report(
            video_id=video.id if video else vod_id,
            video_title=vod_name or (video.title if video else ""),
            play_url=play_url,
            error_type=error_type,
            reported_by="user",
        )

        if video is None:
            logger.info(f"Report for unknown video {vod_id or vod_name!r} stored without a check")
            return {"reported": True, "video_id": None, "checked_routes": 0, "routes_removed": 0, "is_valid": None}

        keys = [key for key, url in (video.play_routes or {}).items() if url == play_url]
        write = await self.validate_video(video, keys or None)
        checked = len(keys) if keys else len(video.play_routes or {})

        return {
            "reported": True,
            "video_id": video.id,
            "checked_routes": checked,
            "routes_removed": len(write.removed),
            "is_valid": not write.invalidated and bool(video.is_valid),
        }
