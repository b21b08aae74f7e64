"""
Wire dialects spoken by resource sites

A dialect knows which query parameters select a list page or a detail record
and how to turn a response body into RawRecords. New dialects are added with
register_dialect().
"""
import json
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import SourcePayloadError

PLAY_GROUP_SEPARATOR = "$$$"


class RawRecord(BaseModel):
    """One title as a resource site described it, tagged with its dialect"""
    dialect: str
    fields: Dict[str, str] = Field(default_factory=dict)

    def get(self, *names: str) -> str:
        """First non-empty value among the given field aliases"""
        for name in names:
            value = self.fields.get(name)
            if value:
                return value
        return ""

    @property
    def external_id(self) -> str:
        return self.get("vod_id", "id")

    @property
    def has_play_urls(self) -> bool:
        return bool(self.get("vod_play_url", "play_url").strip())


class PageResult(BaseModel):
    records: List[RawRecord] = Field(default_factory=list)
    page: int = 1
    page_count: int = 1
    total: int = 0

    @property
    def has_more(self) -> bool:
        return self.page < self.page_count


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _flatten(item: Dict[str, Any]) -> Dict[str, str]:
    fields = {}
    for key, value in item.items():
        text = _stringify(value)
        if text is not None:
            fields[str(key)] = text
    return fields


def _load_json(body: str, source_name: str) -> Dict[str, Any]:
    try:
        data = json.loads(body)
    except ValueError as e:
        raise SourcePayloadError(source_name, f"invalid JSON payload: {e}")
    if not isinstance(data, dict):
        raise SourcePayloadError(source_name, "JSON payload is not an object")
    return data


class Dialect:
    """Base dialect; subclasses override the request and parse hooks"""
    name = ""

    def list_params(self, category: Optional[int], page: int, page_size: int) -> Dict[str, Any]:
        raise NotImplementedError

    def detail_params(self, external_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def parse(self, body: str, source_name: str, response_format: str = "auto") -> PageResult:
        raise NotImplementedError

    def _json_page(self, data: Dict[str, Any], source_name: str) -> PageResult:
        items = data.get("list")
        if items is None:
            items = data.get("data") or []
        if not isinstance(items, list):
            raise SourcePayloadError(source_name, "'list' is not an array")

        records = [
            RawRecord(dialect=self.name, fields=_flatten(item))
            for item in items
            if isinstance(item, dict)
        ]
        page = _to_int(data.get("page"), 1)
        return PageResult(
            records=records,
            page=page,
            page_count=_to_int(data.get("pagecount"), page),
            total=_to_int(data.get("total"), len(records)),
        )


class CmsDialect(Dialect):
    """Apple-CMS style provide/vod API, JSON or XML"""
    name = "cms"

    # XML element name -> JSON field name
    XML_FIELDS = {
        "id": "vod_id",
        "tid": "type_id",
        "name": "vod_name",
        "type": "type_name",
        "pic": "vod_pic",
        "lang": "vod_lang",
        "area": "vod_area",
        "year": "vod_year",
        "note": "vod_remarks",
        "actor": "vod_actor",
        "director": "vod_director",
        "writer": "vod_writer",
        "des": "vod_content",
        "tag": "vod_tag",
        "last": "vod_time",
    }

    def list_params(self, category, page, page_size):
        params = {"ac": "detail", "pg": page, "pagesize": page_size}
        if category is not None:
            params["t"] = category
        return params

    def detail_params(self, external_id):
        return {"ac": "detail", "ids": external_id}

    def parse(self, body, source_name, response_format="auto"):
        fmt = response_format
        if fmt not in ("json", "xml"):
            fmt = "xml" if body.lstrip().startswith("<") else "json"

        if fmt == "xml":
            return self._xml_page(body, source_name)
        return self._json_page(_load_json(body, source_name), source_name)

    def _xml_page(self, body: str, source_name: str) -> PageResult:
        try:
            root = ET.fromstring(body.strip())
        except ET.ParseError as e:
            raise SourcePayloadError(source_name, f"invalid XML payload: {e}")

        list_elem = root if root.tag == "list" else root.find("list")
        if list_elem is None:
            raise SourcePayloadError(source_name, "XML payload has no <list> element")

        records = [self._xml_record(video) for video in list_elem.iter("video")]
        page = _to_int(list_elem.get("page"), 1)
        return PageResult(
            records=records,
            page=page,
            page_count=_to_int(list_elem.get("pagecount"), page),
            total=_to_int(list_elem.get("recordcount"), len(records)),
        )

    def _xml_record(self, video: ET.Element) -> RawRecord:
        fields = {}
        for child in video:
            target = self.XML_FIELDS.get(child.tag)
            if target and child.text:
                fields[target] = child.text.strip()

        # <dl><dd flag="m3u8">label$url#...</dd>...</dl>
        flags, groups = [], []
        dl = video.find("dl")
        if dl is not None:
            for dd in dl.findall("dd"):
                if dd.text and dd.text.strip():
                    flags.append(dd.get("flag", ""))
                    groups.append(dd.text.strip())
        if groups:
            fields["vod_play_from"] = PLAY_GROUP_SEPARATOR.join(flags)
            fields["vod_play_url"] = PLAY_GROUP_SEPARATOR.join(groups)

        return RawRecord(dialect=self.name, fields=fields)


class TvboxDialect(Dialect):
    """TVBox spider-style JSON API"""
    name = "tvbox"

    def list_params(self, category, page, page_size):
        return {"t": "" if category is None else category, "pg": page}

    def detail_params(self, external_id):
        return {"ac": "detail", "ids": external_id}

    def parse(self, body, source_name, response_format="auto"):
        return self._json_page(_load_json(body, source_name), source_name)


DIALECTS: Dict[str, Dialect] = {}


def register_dialect(dialect: Dialect) -> None:
    DIALECTS[dialect.name] = dialect


def get_dialect(name: str) -> Dialect:
    try:
        return DIALECTS[name]
    except KeyError:
        raise ValueError(f"Unknown source dialect '{name}'")


register_dialect(CmsDialect())
register_dialect(TvboxDialect())
