import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm.exc import StaleDataError

from vodhub.database import KeyedLock, VideoRepository
from vodhub.errors import MergeConflict
from vodhub.models import SourceConfig
from vodhub.pipeline.merge import (
    apply_merge,
    build_video,
    canonical_id,
    match_key,
    merge_routes,
    pick,
)
from vodhub.pipeline.normalizer import normalize

from conftest import LONG_SYNOPSIS, cms_record


def test_match_key_normalizes_title():
    assert match_key("  Hello   World ", "2024") == "hello world|2024"
    assert match_key("Hello World", "2024") != match_key("Hello World", "2023")
    assert match_key("Hello World", "") == "hello world|"


def test_canonical_id_is_stable():
    key = match_key("示例片", "2024")
    assert canonical_id(key) == canonical_id(key)
    assert len(canonical_id(key)) == 20


def test_pick_rules():
    # empty sides yield
    assert pick("old", "", 90, 10) == "old"
    assert pick("", "new", 10, 90) == "new"
    assert pick([], ["a"], 10, 90) == ["a"]

    # weight decides
    assert pick("old", "new", 90, 60) == "new"
    assert pick("old", "new", 10, 60) == "old"

    # equal weight prefers the longer value, then existing
    assert pick("short", "much longer", 60, 60) == "much longer"
    assert pick("much longer", "short", 60, 60) == "much longer"
    assert pick("abc", "xyz", 60, 60) == "abc"
    assert pick(["a"], ["b", "c"], 60, 60) == ["b", "c"]


def test_lower_weight_cannot_overwrite_route():
    existing = {"low-r1": "http://old"}

    merged = merge_routes(existing, {"low-r1": "http://new", "low-r2": "http://b"}, 10, 90)
    assert merged == {"low-r1": "http://old", "low-r2": "http://b"}

    merged = merge_routes(existing, {"low-r1": "http://new"}, 90, 90)
    assert merged == {"low-r1": "http://new"}


def test_apply_merge_is_idempotent(cms1):
    record = normalize(cms_record(1, "示例片", vod_actor="张三", vod_play_url="r1$$http://a"), cms1)
    video = build_video(record, cms1)

    assert apply_merge(video, record, cms1) == []


def test_build_video_without_routes_is_invalid(cms1):
    video = build_video(normalize(cms_record(1, "示例片"), cms1), cms1)

    assert video.play_routes == {}
    assert video.is_valid is False
    assert video.quality_score == 0


async def test_two_source_scenario(videos, cms1, cms2):
    first = normalize(cms_record(1, "示例片", vod_actor="张三", vod_play_url="r1$$http://a"), cms1)
    second = normalize(cms_record(77, "示例片", vod_content=LONG_SYNOPSIS, vod_play_url="r2$$http://b"), cms2)

    created = await videos.reconcile(first, cms1)
    updated = await videos.reconcile(second, cms2)

    assert created.action == "created"
    assert updated.action == "updated"
    assert updated.canonical_id == created.canonical_id
    assert await videos.count() == 1

    video = await videos.get(created.canonical_id)
    assert video.cast == ["张三"]
    assert video.synopsis == LONG_SYNOPSIS
    assert video.play_routes == {"cms1-r1": "http://a", "cms2-r2": "http://b"}
    assert set(video.source_names) == {"cms1", "cms2"}
    assert video.source_priority == 90
    assert video.is_valid is True
    assert video.quality_score == 15 + 25 + 30


async def test_title_variants_share_one_row(videos, cms1, cms2):
    await videos.reconcile(normalize(cms_record(1, "Hello  World"), cms1), cms1)
    await videos.reconcile(normalize(cms_record(2, "hello world"), cms2), cms2)
    await videos.reconcile(normalize(cms_record(3, "hello world", year="2023"), cms2), cms2)

    assert await videos.count() == 2


async def test_repeated_reconcile_is_a_no_op(videos, cms1):
    record = normalize(cms_record(1, "示例片", vod_actor="张三", vod_play_url="r1$$http://a"), cms1)

    first = await videos.reconcile(record, cms1)
    before = await videos.get(first.canonical_id)
    second = await videos.reconcile(record, cms1)
    after = await videos.get(first.canonical_id)

    assert second.action == "updated"
    assert second.changed == []
    assert after.version == before.version
    assert after.quality_score == before.quality_score


async def test_low_weight_source_keeps_its_routes_but_not_fields(videos):
    strong = SourceConfig(name="strong", url="http://strong.example.com", weight=90)
    weak = SourceConfig(name="weak", url="http://weak.example.com", weight=10)

    await videos.reconcile(normalize(cms_record(1, "示例片", vod_content=LONG_SYNOPSIS, vod_play_url="r1$$http://a"), strong), strong)
    await videos.reconcile(normalize(cms_record(2, "示例片", vod_content="另一段完全不同而且更长的简介内容，足足有四十多个字符那么长的一段文字", vod_play_url="r1$$http://weak-1"), weak), weak)
    result = await videos.reconcile(normalize(cms_record(2, "示例片", vod_play_url="r1$$http://weak-2"), weak), weak)

    video = await videos.get(result.canonical_id)
    assert video.synopsis == LONG_SYNOPSIS
    assert video.play_routes == {"strong-r1": "http://a", "weak-r1": "http://weak-1"}
    assert video.source_names == ["strong", "weak"]
    assert video.source_priority == 90


async def test_concurrent_merges_of_one_title(videos):
    sources = [
        SourceConfig(name=f"site{i}", url=f"http://site{i}.example.com", weight=10 * (i + 1))
        for i in range(5)
    ]
    records = [
        normalize(cms_record(i, "同名片", vod_play_url=f"r$$http://site{i}/v.m3u8"), source)
        for i, source in enumerate(sources)
    ]

    results = await asyncio.gather(*(
        videos.reconcile(record, source) for record, source in zip(records, sources)
    ))

    assert await videos.count() == 1
    assert [r.action for r in results].count("created") == 1
    video = await videos.get(results[0].canonical_id)
    assert len(video.play_routes) == 5
    assert video.source_names == sorted(s.name for s in sources)
    assert len(videos.locks) == 0


async def test_write_retries_then_gives_up(database):
    repo = VideoRepository(database.session_factory, max_attempts=2)

    operation = AsyncMock(side_effect=StaleDataError("stale"))
    with pytest.raises(MergeConflict):
        await repo._write_with_retry("k", operation)
    assert operation.call_count == 2

    operation = AsyncMock(side_effect=[StaleDataError("stale"), "ok"])
    assert await repo._write_with_retry("k", operation) == "ok"
    assert operation.call_count == 2


async def test_keyed_lock_releases_entries():
    locks = KeyedLock()

    async with locks.hold("a"):
        assert len(locks) == 1
    assert len(locks) == 0


async def test_rescore_all_fixes_drifted_scores(videos, cms1):
    result = await videos.reconcile(normalize(cms_record(1, "示例片", vod_actor="张三"), cms1), cms1)
    video = await videos.get(result.canonical_id)

    async with videos.session_factory() as session:
        async with session.begin():
            row = await session.get(type(video), video.id)
            row.quality_score = 99

    assert await videos.rescore_all() == 1
    assert (await videos.get(video.id)).quality_score == 15


async def test_low_quality_listing(videos, cms1):
    await videos.reconcile(normalize(cms_record(1, "空壳片"), cms1), cms1)
    await videos.reconcile(normalize(cms_record(2, "完整片", vod_actor="张三", vod_director="李四", vod_content=LONG_SYNOPSIS, vod_play_url="r1$$http://a"), cms1), cms1)

    low = await videos.list_low_quality(40)

    assert [v.title for v in low] == ["空壳片"]
