"""
Dedup and merge rules for folding source records into canonical videos

Everything here is pure: it computes keys and merged values in memory.
Persistence and concurrency control live in database.videos.
"""
import hashlib
import re
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from ..models import CanonicalVideo, SourceConfig
from .normalizer import NormalizedRecord
from .scoring import score

SCALAR_FIELDS = (
    "title",
    "area",
    "language",
    "synopsis",
    "remarks",
    "cover",
    "category_id",
    "category_name",
)
LIST_FIELDS = ("cast", "director", "writer")

_SPACE_RE = re.compile(r"\s+")


class MergeResult(BaseModel):
    action: str  # 'created' or 'updated'
    canonical_id: str
    changed: List[str] = Field(default_factory=list)


def match_key(title: str, year: str) -> str:
    """Lower-cased, whitespace-collapsed title plus year; an empty year only matches an empty year"""
    normalized = _SPACE_RE.sub(" ", (title or "").strip()).lower()
    return f"{normalized}|{(year or '').strip()}"


def canonical_id(key: str) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:20]


def route_key(source_name: str, label: str) -> str:
    return f"{source_name}-{label}"


def prefixed_routes(source_name: str, play_urls: Dict[str, str]) -> Dict[str, str]:
    return {route_key(source_name, label): url for label, url in play_urls.items()}


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _size(value: Any) -> int:
    if isinstance(value, (str, list)):
        return len(value)
    return 1


def pick(existing: Any, incoming: Any, incoming_weight: int, recorded_priority: int) -> Any:
    """
    Resolve one field conflict

    An empty side always yields to the other. Otherwise the higher weight
    wins, equal weights prefer the longer value (entry count for lists), and
    a remaining tie keeps the existing value.
    """
    if _is_empty(incoming):
        return existing
    if _is_empty(existing):
        return incoming
    if incoming == existing:
        return existing
    if incoming_weight != recorded_priority:
        return incoming if incoming_weight > recorded_priority else existing
    return incoming if _size(incoming) > _size(existing) else existing


def union_tags(existing: List[str], incoming: List[str]) -> List[str]:
    merged = list(existing or [])
    for tag in incoming or []:
        if tag not in merged:
            merged.append(tag)
    return merged


def merge_routes(
    existing: Dict[str, str],
    incoming: Dict[str, str],
    incoming_weight: int,
    recorded_priority: int,
) -> Dict[str, str]:
    """Union route maps; an existing key is only overwritten by an equal or higher weight"""
    merged = dict(existing or {})
    for key, url in incoming.items():
        if key not in merged or incoming_weight >= recorded_priority:
            merged[key] = url
    return merged


def build_video(record: NormalizedRecord, source: SourceConfig) -> CanonicalVideo:
    """Seed a new canonical video from the first record seen for its key"""
    key = match_key(record.title, record.year)
    routes = prefixed_routes(source.name, record.play_urls)

    video = CanonicalVideo(
        id=canonical_id(key),
        match_key=key,
        title=record.title,
        year=record.year,
        area=record.area,
        language=record.language,
        cast=list(record.cast),
        director=list(record.director),
        writer=list(record.writer),
        synopsis=record.synopsis,
        tags=list(record.tags),
        remarks=record.remarks,
        cover=record.cover,
        category_id=record.category_id,
        category_name=record.category_name,
        play_routes=routes,
        source_names=[source.name],
        source_priority=source.weight,
        is_valid=bool(routes),
        last_validated_at=None,
    )
    video.quality_score = score(video)
    return video


def apply_merge(video: CanonicalVideo, record: NormalizedRecord, source: SourceConfig) -> List[str]:
    """
    Merge a record into an existing canonical video in place

    JSON columns are always reassigned, never mutated, so the ORM sees the change.

    Returns:
        Names of the columns that changed (empty when the merge is a no-op)
    """
    weight = source.weight
    priority = video.source_priority or 0
    changed = []

    for field in SCALAR_FIELDS + LIST_FIELDS:
        current = getattr(video, field)
        value = pick(current, getattr(record, field), weight, priority)
        if value != current:
            setattr(video, field, list(value) if isinstance(value, list) else value)
            changed.append(field)

    tags = union_tags(video.tags, record.tags)
    if tags != (video.tags or []):
        video.tags = tags
        changed.append("tags")

    routes = merge_routes(
        video.play_routes,
        prefixed_routes(source.name, record.play_urls),
        weight,
        priority,
    )
    if routes != (video.play_routes or {}):
        video.play_routes = routes
        changed.append("play_routes")

    names = sorted(set(video.source_names or []) | {source.name})
    if names != (video.source_names or []):
        video.source_names = names
        changed.append("source_names")

    if weight > priority:
        video.source_priority = weight
        changed.append("source_priority")

    if video.is_valid != bool(routes):
        video.is_valid = bool(routes)
        changed.append("is_valid")

    new_score = score(video)
    if new_score != video.quality_score:
        video.quality_score = new_score
        changed.append("quality_score")

    return changed


def populated_fields(video: CanonicalVideo) -> List[str]:
    """Columns a freshly built video carries a value for"""
    names = SCALAR_FIELDS + LIST_FIELDS + ("tags", "play_routes")
    return [name for name in names if not _is_empty(getattr(video, name))]
