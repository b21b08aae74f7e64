import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import DataError

from vodhub.collector.orchestrator import DONE
from vodhub.collector.outcome import PageCounts
from vodhub.database import SourceRegistry
from vodhub.errors import SourceNotFound, TaskAlreadyRunning
from vodhub.logging_config import PerformanceLogger
from vodhub.models import SourceConfig

from conftest import FakeSourceClient, cms_record, make_orchestrator, page_of


def site(name: str, weight: int = 50, categories=()) -> SourceConfig:
    return SourceConfig(name=name, url=f"http://{name}.example.com/api", weight=weight, categories=list(categories))


async def add_sites(registry, *configs):
    for config in configs:
        await registry.upsert_source(config)


async def test_partial_failure_still_completes(database, registry, videos):
    await add_sites(registry, site("cms1"), site("cms2"), site("cms3"))
    client = FakeSourceClient(
        pages={
            "cms2": [page_of([cms_record(1, "片A", vod_play_url="r1$http://a")])],
            "cms3": [page_of([cms_record(9, "片B", vod_play_url="r1$http://b")])],
        },
        down=["cms1"],
    )
    orchestrator = make_orchestrator(database, client)

    task_id = await orchestrator.run_incremental()
    snapshot = await orchestrator.wait(task_id)

    assert snapshot.status == "completed"
    assert snapshot.error_count >= 1
    assert "cms1" in snapshot.last_error
    assert snapshot.videos_collected == 2
    assert await videos.count() == 2

    by_source = {o["source"]: o["status"] for o in snapshot.source_outcomes}
    assert by_source == {"cms1": "failed", "cms2": "completed", "cms3": "completed"}

    health = {h.source_name: h for h in await registry.list_health()}
    assert health["cms1"].consecutive_failures == 1
    assert health["cms1"].status == "degraded"
    assert health["cms2"].status == "healthy"


async def test_all_sources_down_fails_the_task(database, registry):
    await add_sites(registry, site("cms1"), site("cms2"))
    orchestrator = make_orchestrator(database, FakeSourceClient(down=["cms1", "cms2"]))

    task_id = await orchestrator.run_incremental()
    snapshot = await orchestrator.wait(task_id)

    assert snapshot.status == "failed"
    assert snapshot.last_error
    assert snapshot.ended_at is not None
    assert await orchestrator.tasks.get_lease("incremental") is None


async def test_no_sources_completes_empty(database):
    orchestrator = make_orchestrator(database, FakeSourceClient())

    snapshot = await orchestrator.wait(await orchestrator.run_full())

    assert snapshot.status == "completed"
    assert snapshot.videos_collected == 0


async def test_same_scope_is_rejected_while_running(database, registry):
    await add_sites(registry, site("cms1", categories=[1]))
    gate = asyncio.Event()
    client = FakeSourceClient(pages={"cms1": [page_of([cms_record(1, "片A")])]}, gate=gate)
    orchestrator = make_orchestrator(database, client)

    first = await orchestrator.run_incremental()
    with pytest.raises(TaskAlreadyRunning) as exc_info:
        await orchestrator.run_incremental()
    assert exc_info.value.task_id == first

    # a different scope is independent
    other = await orchestrator.run_category(1)

    gate.set()
    assert (await orchestrator.wait(first)).status == "completed"
    assert (await orchestrator.wait(other)).status == "completed"

    # the lease is released on completion
    again = await orchestrator.run_incremental()
    assert (await orchestrator.wait(again)).status == "completed"


async def test_cancel_stops_at_page_boundary(database, registry):
    await add_sites(registry, site("cms1"))
    gate = asyncio.Event()
    pages = [page_of([cms_record(i, f"片{i}")], page=i, page_count=3) for i in range(1, 4)]
    client = FakeSourceClient(pages={"cms1": pages}, gate=gate)
    orchestrator = make_orchestrator(database, client)

    task_id = await orchestrator.run_full()
    assert await orchestrator.cancel(task_id) is True
    gate.set()
    snapshot = await orchestrator.wait(task_id)

    assert snapshot.status == "cancelled"
    assert snapshot.cancel_requested
    assert len(client.calls) <= 1
    assert await orchestrator.cancel(task_id) is False


async def test_progress_and_checkpoint(database, registry):
    await add_sites(registry, site("cms1"))
    pages = [
        page_of([cms_record(1, "片1"), cms_record(2, "片2")], page=1, page_count=2),
        page_of([cms_record(3, "片3")], page=2, page_count=2),
    ]
    orchestrator = make_orchestrator(database, FakeSourceClient(pages={"cms1": pages}))

    snapshot = await orchestrator.wait(await orchestrator.run_full())

    assert snapshot.status == "completed"
    assert snapshot.current_page == 2
    assert snapshot.total_pages == 2
    assert snapshot.progress == 100.0
    assert snapshot.videos_collected == 3
    assert snapshot.checkpoint == {"cms1": DONE}


async def test_page_cap(database, registry):
    await add_sites(registry, site("cms1"))
    pages = [page_of([cms_record(i, f"片{i}")], page=i, page_count=10) for i in range(1, 11)]
    client = FakeSourceClient(pages={"cms1": pages})
    orchestrator = make_orchestrator(database, client)

    snapshot = await orchestrator.wait(await orchestrator.run_incremental(max_pages=2))

    assert [page for _, _, page in client.calls] == [1, 2]
    assert snapshot.total_pages == 2
    assert snapshot.videos_collected == 2


async def test_details_fill_missing_play_urls(database, registry, videos):
    await add_sites(registry, site("cms1"))
    client = FakeSourceClient(
        pages={"cms1": [page_of([cms_record(1, "示例片"), cms_record(2, "有地址", vod_play_url="r1$http://x")])]},
        details={("cms1", "1"): cms_record(1, "示例片", vod_play_url="r1$http://a", vod_actor="张三")},
    )
    orchestrator = make_orchestrator(database, client)

    await orchestrator.wait(await orchestrator.run_full())

    assert client.detail_calls == [("cms1", "1")]
    video = await videos.find_by_title("示例片")
    assert video.play_routes == {"cms1-r1": "http://a"}
    assert video.cast == ["张三"]
    assert video.is_valid is True


async def test_malformed_records_are_counted(database, registry, videos):
    await add_sites(registry, site("cms1"))
    client = FakeSourceClient(pages={"cms1": [page_of([cms_record(1, ""), cms_record(2, "好片")])]})
    orchestrator = make_orchestrator(database, client)

    snapshot = await orchestrator.wait(await orchestrator.run_full())

    assert snapshot.status == "completed"
    assert snapshot.error_count == 1
    assert snapshot.videos_collected == 1
    assert await videos.count() == 1


async def test_unchanged_records_are_skipped(database, registry):
    await add_sites(registry, site("cms1"))
    client = FakeSourceClient(pages={"cms1": [page_of([cms_record(1, "片A"), cms_record(2, "片B")])]})
    orchestrator = make_orchestrator(database, client)

    await orchestrator.wait(await orchestrator.run_full())
    snapshot = await orchestrator.wait(await orchestrator.run_full())

    assert snapshot.videos_collected == 0
    assert snapshot.videos_updated == 0
    assert snapshot.videos_skipped == 2


async def test_category_run_only_visits_serving_sources(database, registry):
    await add_sites(registry, site("cms1", categories=[1]), site("cms2", categories=[2]))
    client = FakeSourceClient(pages={"cms1": [page_of([cms_record(1, "片A")])]})
    orchestrator = make_orchestrator(database, client)

    snapshot = await orchestrator.wait(await orchestrator.run_category(1))

    assert client.calls == [("cms1", 1, 1)]
    assert snapshot.target_category == 1


async def test_unhealthy_sources_are_skipped(database):
    registry = SourceRegistry(database.session_factory, failure_threshold=1, skip_unhealthy=True)
    await add_sites(registry, site("cms1"), site("cms2"))
    await registry.record_health("cms1", success=False, error="timeout")
    client = FakeSourceClient(pages={"cms2": [page_of([cms_record(1, "片A")])]})
    orchestrator = make_orchestrator(database, client, sources=registry)

    snapshot = await orchestrator.wait(await orchestrator.run_full())

    assert [name for name, _, _ in client.calls] == ["cms2"]
    assert {o["source"]: o["status"] for o in snapshot.source_outcomes}["cms1"] == "skipped"
    assert snapshot.status == "completed"


async def test_resume_from_checkpoint(database, registry):
    await add_sites(registry, site("cms1"))
    pages = [page_of([cms_record(i, f"片{i}")], page=i, page_count=2) for i in (1, 2)]
    client = FakeSourceClient(pages={"cms1": pages})
    orchestrator = make_orchestrator(database, client)

    # a task that got through page 1 before its process died
    task = await orchestrator.tasks.start_task("full")
    await orchestrator.tasks.mark_running(task.id)
    await orchestrator.tasks.record_page(task.id, "cms1", 2, PageCounts(created=1), total_pages=2)

    assert await orchestrator.resume(task.id) is True
    snapshot = await orchestrator.wait(task.id)

    assert client.calls == [("cms1", None, 2)]
    assert snapshot.status == "completed"
    assert snapshot.videos_collected == 2
    assert await orchestrator.resume(task.id) is False


async def test_interrupted_task_resumes_in_a_new_orchestrator(database, registry, videos):
    await add_sites(registry, site("cms1"))
    pages = {"cms1": [page_of([cms_record(1, "片A")])]}
    blocked = FakeSourceClient(pages=pages, gate=asyncio.Event())
    stuck = make_orchestrator(database, blocked)

    task_id = await stuck.run_incremental()
    while not blocked.calls:
        await asyncio.sleep(0.01)
    await stuck.shutdown()
    assert (await stuck.get_snapshot(task_id)).status == "running"

    fresh = make_orchestrator(database, FakeSourceClient(pages=pages))
    assert await fresh.resume_all() == [task_id]
    snapshot = await fresh.wait(task_id)

    assert snapshot.status == "completed"
    assert await videos.count() == 1


async def test_database_error_on_one_record_is_counted(database, registry, videos, monkeypatch):
    await add_sites(registry, site("cms1"), site("cms2"))
    client = FakeSourceClient(pages={
        "cms1": [page_of([cms_record(1, "坏片"), cms_record(2, "好片")])],
        "cms2": [page_of([cms_record(3, "片C")])],
    })
    orchestrator = make_orchestrator(database, client)
    reconcile = orchestrator.videos.reconcile

    async def rejecting(record, source):
        if record.title == "坏片":
            raise DataError("INSERT INTO videos", {}, Exception("value too long for type character varying(255)"))
        return await reconcile(record, source)

    monkeypatch.setattr(orchestrator.videos, "reconcile", rejecting)

    snapshot = await orchestrator.wait(await orchestrator.run_full())

    assert snapshot.status == "completed"
    assert snapshot.error_count == 1
    assert "value too long" in snapshot.last_error
    assert snapshot.videos_collected == 2
    assert await videos.count() == 2


class CrashingClient(FakeSourceClient):
    async def fetch_list_page(self, source, category, page):
        if source.name == "cms1":
            raise RuntimeError("unexpected payload shape")
        return await super().fetch_list_page(source, category, page)


async def test_crashing_source_fails_only_itself(database, registry, videos):
    await add_sites(registry, site("cms1"), site("cms2"))
    client = CrashingClient(pages={"cms2": [page_of([cms_record(1, "片A")])]})
    orchestrator = make_orchestrator(database, client, concurrency=2)

    snapshot = await orchestrator.wait(await orchestrator.run_full())

    assert snapshot.status == "completed"
    assert {o["source"]: o["status"] for o in snapshot.source_outcomes} == {"cms1": "failed", "cms2": "completed"}
    assert "unexpected payload shape" in snapshot.last_error
    assert snapshot.error_count >= 1
    assert await videos.count() == 1
    assert await orchestrator.tasks.get_lease("full") is None


async def test_single_source_run_has_no_page_cap(database):
    registry = SourceRegistry(database.session_factory, failure_threshold=1, skip_unhealthy=True)
    await add_sites(registry, site("cms1"), site("cms2"))
    # over the failure threshold, but asked for by name
    await registry.record_health("cms1", success=False, error="timeout")
    pages = [page_of([cms_record(i, f"片{i}")], page=i, page_count=8) for i in range(1, 9)]
    client = FakeSourceClient(pages={"cms1": pages, "cms2": [page_of([cms_record(99, "片X")])]})
    orchestrator = make_orchestrator(database, client, sources=registry)

    task_id = await orchestrator.run_source("cms1")
    snapshot = await orchestrator.wait(task_id)

    assert snapshot.status == "completed"
    assert snapshot.type == "source"
    assert snapshot.target_source == "cms1"
    assert snapshot.videos_collected == 8
    assert {name for name, _, _ in client.calls} == {"cms1"}
    assert (await registry.list_health())[0].consecutive_failures == 0


async def test_single_source_scope_is_independent(database, registry):
    await add_sites(registry, site("cms1"))
    gate = asyncio.Event()
    client = FakeSourceClient(pages={"cms1": [page_of([cms_record(1, "片A")])]}, gate=gate)
    orchestrator = make_orchestrator(database, client)

    full = await orchestrator.run_full()
    single = await orchestrator.run_source("cms1")
    with pytest.raises(TaskAlreadyRunning):
        await orchestrator.run_source("cms1")

    gate.set()
    assert (await orchestrator.wait(full)).status == "completed"
    assert (await orchestrator.wait(single)).status == "completed"


async def test_unknown_source_run_is_rejected(database, registry):
    await add_sites(registry, site("cms1"))
    await registry.upsert_source(site("cms2"), enabled=False)
    orchestrator = make_orchestrator(database, FakeSourceClient())

    for name in ("nope", "cms2"):
        with pytest.raises(SourceNotFound):
            await orchestrator.run_source(name)
    assert await orchestrator.tasks.list_tasks() == []


def test_cancellation_is_not_logged_as_failure():
    log = MagicMock()

    with pytest.raises(asyncio.CancelledError):
        with PerformanceLogger(log, "full collection", run_id="t1"):
            raise asyncio.CancelledError()

    log.error.assert_not_called()
    assert log.info.call_args.args[0] == "Interrupted full collection"
