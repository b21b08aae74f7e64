"""
Pytest Fixtures

Shared fakes and fixtures: a throwaway SQLite catalog, scripted resource
sites and a scripted playback prober.
"""
import os

os.environ.setdefault("LOG_TO_FILE", "false")

import asyncio
from typing import Dict, Iterable, List, Optional, Tuple
from unittest.mock import MagicMock

import aiohttp
import pytest

from vodhub.collector.orchestrator import CollectionOrchestrator
from vodhub.database import Database, SourceRegistry, VideoRepository
from vodhub.errors import SourceUnavailable
from vodhub.models import SourceConfig
from vodhub.scraper.core import RetryPolicy
from vodhub.scraper.dialects import PageResult, RawRecord

LONG_SYNOPSIS = "很长的简介" * 8  # 40 chars


def cms_record(vod_id, name: str, year: str = "2024", **fields) -> RawRecord:
    data = {"vod_id": str(vod_id), "vod_name": name, "vod_year": year}
    data.update({key: str(value) for key, value in fields.items()})
    return RawRecord(dialect="cms", fields=data)


def page_of(records: List[RawRecord], page: int = 1, page_count: int = 1) -> PageResult:
    return PageResult(records=records, page=page, page_count=page_count, total=len(records))


def http_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=status)


class FakeSourceClient:
    """Scripted resource sites: pages per source, details per (source, id), sources that are down"""

    def __init__(
        self,
        pages: Optional[Dict[str, List[PageResult]]] = None,
        details: Optional[Dict[Tuple[str, str], RawRecord]] = None,
        down: Iterable[str] = (),
        gate: Optional[asyncio.Event] = None,
    ):
        self.pages = pages or {}
        self.details = details or {}
        self.down = set(down)
        self.gate = gate
        self.calls: List[Tuple[str, Optional[int], int]] = []
        self.detail_calls: List[Tuple[str, str]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def fetch_list_page(self, source: SourceConfig, category, page: int) -> PageResult:
        self.calls.append((source.name, category, page))
        if self.gate is not None:
            await self.gate.wait()
        if source.name in self.down:
            raise SourceUnavailable(source.name, "connection refused")

        pages = self.pages.get(source.name, [])
        if page > len(pages):
            return PageResult(records=[], page=page, page_count=len(pages))
        return pages[page - 1]

    async def fetch_detail(self, source: SourceConfig, external_id: str) -> Optional[RawRecord]:
        self.detail_calls.append((source.name, external_id))
        if source.name in self.down:
            raise SourceUnavailable(source.name, "connection refused")
        return self.details.get((source.name, external_id))


class FakeProbeSession:
    """Stands in for SourceSession when probing playback URLs"""

    def __init__(self, dead: Iterable[str] = (), flaky: Iterable[str] = ()):
        self.dead = set(dead)
        self.flaky = set(flaky)
        self.probed: List[str] = []

    async def start(self):
        pass

    async def close(self):
        pass

    async def probe(self, url: str, timeout: float) -> int:
        self.probed.append(url)
        if url in self.dead:
            raise http_error(404)
        if url in self.flaky:
            self.flaky.discard(url)
            raise aiohttp.ClientConnectionError("reset by peer")
        return 200


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    await db.create_tables()
    yield db
    await db.dispose()


@pytest.fixture
def videos(database):
    return VideoRepository(database.session_factory)


@pytest.fixture
def registry(database):
    return SourceRegistry(database.session_factory)


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_retries=2, backoff=0.0)


@pytest.fixture
def cms1():
    return SourceConfig(name="cms1", url="http://cms1.example.com/api.php/provide/vod/", weight=60)


@pytest.fixture
def cms2():
    return SourceConfig(name="cms2", url="http://cms2.example.com/api.php/provide/vod/", weight=90)


def make_orchestrator(database: Database, client, **kwargs) -> CollectionOrchestrator:
    options = {"concurrency": 1, "request_delay": 0, "batch_delay": 0}
    options.update(kwargs)
    return CollectionOrchestrator(database, client_factory=lambda: client, **options)
