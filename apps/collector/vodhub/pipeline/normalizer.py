"""
Normalizer - maps dialect-specific raw records onto the canonical video schema
"""
import html
import json
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import MalformedRecord
from ..models import SourceConfig
from ..scraper.dialects import PLAY_GROUP_SEPARATOR, RawRecord

DEFAULT_ROUTE_LABEL = "默认"

# Field aliases, first non-empty wins
TITLE_FIELDS = ("vod_name", "name", "title")
YEAR_FIELDS = ("vod_year", "year")
AREA_FIELDS = ("vod_area", "area")
LANGUAGE_FIELDS = ("vod_lang", "lang", "language")
CAST_FIELDS = ("vod_actor", "actor", "actors")
DIRECTOR_FIELDS = ("vod_director", "director")
WRITER_FIELDS = ("vod_writer", "writer")
SYNOPSIS_FIELDS = ("vod_content", "des", "blurb", "vod_blurb", "content")
TAG_FIELDS = ("vod_tag", "tag", "vod_class")
REMARKS_FIELDS = ("vod_remarks", "remarks", "note")
COVER_FIELDS = ("vod_pic", "pic", "cover")
CATEGORY_ID_FIELDS = ("type_id", "tid")
CATEGORY_NAME_FIELDS = ("type_name", "type")
PLAY_FROM_FIELDS = ("vod_play_from", "play_from")
PLAY_URL_FIELDS = ("vod_play_url", "play_url")

AREA_NORMALIZATION = {
    "大陆": "中国大陆",
    "内地": "中国大陆",
    "国产": "中国大陆",
    "中国": "中国大陆",
    "香港": "中国香港",
    "港": "中国香港",
    "台湾": "中国台湾",
    "台": "中国台湾",
    "韩": "韩国",
    "南韩": "韩国",
    "日": "日本",
    "美": "美国",
    "英": "英国",
    "泰": "泰国",
}

# Widths of the matching String columns on videos
FIELD_LIMITS = {
    "title": 500,
    "area": 100,
    "language": 100,
    "remarks": 255,
    "category_name": 100,
}

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_YEAR_RE = re.compile(r"(19|20)\d{2}")
_LIST_SPLIT_RE = re.compile(r"[,，/、|]")
_AREA_SPLIT_RE = re.compile(r"[,，/]")
_ENTRY_SPLIT_RE = re.compile(r"[#;,]")
_ENTRY_RE = re.compile(r"^([^$]*?)\$+(.+)$")


class NormalizedRecord(BaseModel):
    """A source record in canonical form, before it is merged"""
    external_id: str = ""
    title: str
    year: str = ""
    area: str = ""
    language: str = ""
    cast: List[str] = Field(default_factory=list)
    director: List[str] = Field(default_factory=list)
    writer: List[str] = Field(default_factory=list)
    synopsis: str = ""
    tags: List[str] = Field(default_factory=list)
    remarks: str = ""
    cover: str = ""
    category_id: Optional[int] = None
    category_name: str = ""
    play_urls: Dict[str, str] = Field(
        default_factory=dict,
        description="Route label -> URL, not yet prefixed with the source name",
    )


def clean_text(value: str) -> str:
    """Strip HTML tags and entities and collapse whitespace"""
    if not value:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", value))
    return _SPACE_RE.sub(" ", text).strip()


def split_list(value: str) -> List[str]:
    """Split a people/tag string on the usual separators, dropping blanks and duplicates"""
    seen = []
    for part in _LIST_SPLIT_RE.split(value or ""):
        part = part.strip()
        if part and part not in seen:
            seen.append(part)
    return seen


def normalize_year(value: str) -> str:
    match = _YEAR_RE.search(value or "")
    return match.group(0) if match else ""


def normalize_area(value: str) -> str:
    """Map area aliases to one spelling; composite areas are normalized part by part"""
    trimmed = (value or "").strip()
    if not trimmed:
        return ""
    if trimmed in AREA_NORMALIZATION:
        return AREA_NORMALIZATION[trimmed]

    parts = [p.strip() for p in _AREA_SPLIT_RE.split(trimmed) if p.strip()]
    if len(parts) > 1:
        normalized = []
        for part in parts:
            area = AREA_NORMALIZATION.get(part, part)
            if area not in normalized:
                normalized.append(area)
        return ",".join(normalized)
    return trimmed


def _is_playable(url: str) -> bool:
    return url.startswith("http://") or url.startswith("https://")


def _add_route(routes: Dict[str, str], label: str, url: str) -> None:
    key = label
    n = 2
    while key in routes:
        if routes[key] == url:
            return
        key = f"{label}-{n}"
        n += 1
    routes[key] = url


def parse_play_urls(play_url: str, play_from: str = "") -> Dict[str, str]:
    """
    Parse a playback string into {route label: url}

    Accepts a JSON object of label -> url, or the CMS text format: groups
    separated by '$$$' (labelled by the matching play_from entry), entries
    separated by '#', ';' or ',', each entry 'label$url' or a bare url.
    Non-http(s) urls are dropped.
    """
    text = (play_url or "").strip()
    if not text:
        return {}

    routes: Dict[str, str] = {}

    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            data = None
        if isinstance(data, dict):
            for label, url in data.items():
                if isinstance(url, str) and _is_playable(url.strip()):
                    _add_route(routes, str(label).strip() or DEFAULT_ROUTE_LABEL, url.strip())
            return routes

    group_labels = [label.strip() for label in (play_from or "").split(PLAY_GROUP_SEPARATOR)]
    for index, group in enumerate(text.split(PLAY_GROUP_SEPARATOR)):
        group_label = group_labels[index] if index < len(group_labels) else ""
        for entry in _ENTRY_SPLIT_RE.split(group):
            entry = entry.strip()
            if not entry:
                continue

            match = _ENTRY_RE.match(entry)
            if match:
                label, url = match.group(1).strip(), match.group(2).strip()
            else:
                label, url = "", entry

            if not _is_playable(url):
                continue

            if group_label and label:
                label = f"{group_label}-{label}"
            elif group_label:
                label = group_label
            _add_route(routes, label or DEFAULT_ROUTE_LABEL, url)

    return routes


def clip(value: str, field: str) -> str:
    limit = FIELD_LIMITS[field]
    return value[:limit].rstrip() if len(value) > limit else value


def _category_id(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize(raw: RawRecord, source: SourceConfig) -> NormalizedRecord:
    """
    Convert a raw record into a NormalizedRecord

    Raises:
        MalformedRecord: the record has no title
    """
    title = clip(clean_text(raw.get(*TITLE_FIELDS)), "title")
    if not title:
        raise MalformedRecord(
            f"Record from {source.name} has no title",
            external_id=raw.external_id,
        )

    return NormalizedRecord(
        external_id=raw.external_id,
        title=title,
        year=normalize_year(raw.get(*YEAR_FIELDS)),
        area=clip(normalize_area(raw.get(*AREA_FIELDS)), "area"),
        language=clip(clean_text(raw.get(*LANGUAGE_FIELDS)), "language"),
        cast=split_list(clean_text(raw.get(*CAST_FIELDS))),
        director=split_list(clean_text(raw.get(*DIRECTOR_FIELDS))),
        writer=split_list(clean_text(raw.get(*WRITER_FIELDS))),
        synopsis=clean_text(raw.get(*SYNOPSIS_FIELDS)),
        tags=split_list(clean_text(raw.get(*TAG_FIELDS))),
        remarks=clip(clean_text(raw.get(*REMARKS_FIELDS)), "remarks"),
        cover=raw.get(*COVER_FIELDS).strip(),
        category_id=_category_id(raw.get(*CATEGORY_ID_FIELDS)),
        category_name=clip(clean_text(raw.get(*CATEGORY_NAME_FIELDS)), "category_name"),
        play_urls=parse_play_urls(raw.get(*PLAY_URL_FIELDS), raw.get(*PLAY_FROM_FIELDS)),
    )
