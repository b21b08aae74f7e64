"""
Quality scoring for canonical records
"""
from typing import Dict, List, Optional

COVER_POINTS = 20
CAST_POINTS = 15
DIRECTOR_POINTS = 10
SYNOPSIS_POINTS = 25
PLAYBACK_POINTS = 30
MAX_BONUS = 10
MAX_SCORE = COVER_POINTS + CAST_POINTS + DIRECTOR_POINTS + SYNOPSIS_POINTS + PLAYBACK_POINTS + MAX_BONUS


def score_fields(
    cover: str = "",
    cast: Optional[List[str]] = None,
    director: Optional[List[str]] = None,
    synopsis: str = "",
    routes: Optional[Dict[str, str]] = None,
    is_valid: bool = True,
) -> int:
    """
    Score a record from its fields (0-110)

    A cover longer than 10 chars, any cast, any director, a synopsis longer
    than 20 chars and at least one playback route on a valid record each add
    their points; long synopses earn up to 10 bonus points (1 per 50 chars).
    """
    cover = cover or ""
    synopsis = synopsis or ""
    total = 0

    if len(cover) > 10:
        total += COVER_POINTS
    if cast:
        total += CAST_POINTS
    if director:
        total += DIRECTOR_POINTS
    if len(synopsis) > 20:
        total += SYNOPSIS_POINTS
    if is_valid and routes:
        total += PLAYBACK_POINTS

    total += min(MAX_BONUS, len(synopsis) // 50)
    return total


def score(record) -> int:
    """Score a NormalizedRecord or a CanonicalVideo"""
    routes = getattr(record, "play_routes", None)
    if routes is None:
        routes = getattr(record, "play_urls", None)
    is_valid = getattr(record, "is_valid", None)

    return score_fields(
        cover=record.cover,
        cast=record.cast,
        director=record.director,
        synopsis=record.synopsis,
        routes=routes,
        is_valid=True if is_valid is None else is_valid,
    )


def is_low_quality(value: int, threshold: int) -> bool:
    """Whether a score is below the repair threshold"""
    return value < threshold
