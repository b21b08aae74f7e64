import json

import pytest

from vodhub.errors import SourcePayloadError, SourceUnavailable
from vodhub.scraper.dialects import (
    CmsDialect,
    Dialect,
    PageResult,
    get_dialect,
    register_dialect,
)

CMS_JSON = json.dumps({
    "code": 1,
    "page": "2",
    "pagecount": 5,
    "total": 98,
    "list": [
        {"vod_id": 101, "vod_name": "示例片", "vod_year": "2024", "type_id": 6, "vod_play_url": "r1$http://a"},
        {"vod_id": 102, "vod_name": "另一部", "vod_year": None},
    ],
}, ensure_ascii=False)

CMS_XML = """<?xml version="1.0" encoding="utf-8"?>
<rss version="5.1">
  <list page="1" pagecount="1" pagesize="20" recordcount="1">
    <video>
      <last>2024-05-01 10:00:00</last>
      <id>55</id>
      <tid>2</tid>
      <name><![CDATA[示例剧]]></name>
      <type>国产剧</type>
      <pic>https://img.example.com/55.jpg</pic>
      <year>2023</year>
      <area>大陆</area>
      <actor><![CDATA[张三,李四]]></actor>
      <des><![CDATA[<p>剧情简介</p>]]></des>
      <dl>
        <dd flag="m3u8"><![CDATA[第1集$http://a/1.m3u8#第2集$http://a/2.m3u8]]></dd>
        <dd flag="mp4"><![CDATA[第1集$http://b/1.mp4]]></dd>
      </dl>
    </video>
  </list>
</rss>
"""


def test_cms_list_params():
    dialect = get_dialect("cms")

    assert dialect.list_params(None, 3, 20) == {"ac": "detail", "pg": 3, "pagesize": 20}
    assert dialect.list_params(6, 1, 20)["t"] == 6
    assert dialect.detail_params("101") == {"ac": "detail", "ids": "101"}


def test_cms_json_page():
    result = get_dialect("cms").parse(CMS_JSON, "cms1")

    assert result.page == 2
    assert result.page_count == 5
    assert result.total == 98
    assert result.has_more
    assert [r.external_id for r in result.records] == ["101", "102"]
    assert result.records[0].fields["type_id"] == "6"
    assert "vod_year" not in result.records[1].fields
    assert result.records[0].has_play_urls
    assert not result.records[1].has_play_urls


def test_cms_xml_page_is_detected():
    result = get_dialect("cms").parse(CMS_XML, "cms1")

    assert result.page == 1
    assert not result.has_more
    record = result.records[0]
    assert record.dialect == "cms"
    assert record.fields["vod_id"] == "55"
    assert record.fields["vod_name"] == "示例剧"
    assert record.fields["type_id"] == "2"
    assert record.fields["vod_actor"] == "张三,李四"
    assert record.fields["vod_play_from"] == "m3u8$$$mp4"
    assert record.fields["vod_play_url"] == (
        "第1集$http://a/1.m3u8#第2集$http://a/2.m3u8$$$第1集$http://b/1.mp4"
    )


def test_explicit_format_overrides_detection():
    with pytest.raises(SourcePayloadError):
        get_dialect("cms").parse(CMS_XML, "cms1", response_format="json")


@pytest.mark.parametrize("body", ["not json", "[1, 2]", '{"list": "oops"}'])
def test_bad_json_payload(body):
    with pytest.raises(SourcePayloadError) as exc_info:
        get_dialect("cms").parse(body, "cms1")

    assert isinstance(exc_info.value, SourceUnavailable)
    assert exc_info.value.source_name == "cms1"


def test_bad_xml_payload():
    with pytest.raises(SourcePayloadError):
        get_dialect("cms").parse("<list><video>", "cms1")
    with pytest.raises(SourcePayloadError):
        get_dialect("cms").parse("<rss></rss>", "cms1")


def test_tvbox_page():
    dialect = get_dialect("tvbox")
    body = json.dumps({"page": 1, "pagecount": 1, "list": [{"id": "7", "name": "片", "play_url": "http://x"}]})

    assert dialect.list_params(None, 2, 20) == {"t": "", "pg": 2}
    result = dialect.parse(body, "box")
    assert result.records[0].dialect == "tvbox"
    assert result.records[0].external_id == "7"


def test_missing_pagination_defaults_to_single_page():
    result = get_dialect("cms").parse('{"list": []}', "cms1")

    assert result.page == 1
    assert result.page_count == 1
    assert not result.has_more


def test_unknown_dialect():
    with pytest.raises(ValueError):
        get_dialect("nope")


def test_register_custom_dialect():
    class EchoDialect(CmsDialect):
        name = "echo"

    register_dialect(EchoDialect())

    assert isinstance(get_dialect("echo"), Dialect)
    assert isinstance(get_dialect("echo").parse('{"list": []}', "x"), PageResult)
