"""
Collection task orchestrator

Runs incremental, full, category and single-source collection tasks: one
background asyncio task per collection task, sources collected concurrently
under a semaphore, pages within a source strictly in order. Progress and the
per-source checkpoint are persisted after every page so a task can be resumed.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database import Database, SourceRegistry, TaskRepository, TaskSnapshot, VideoRepository
from ..errors import MalformedRecord, MergeConflict, SourceUnavailable, TaskAbort
from ..logging_config import PerformanceLogger, get_logger
from ..models import CollectionTask, SourceConfig
from ..pipeline.normalizer import normalize
from ..scraper.client import SourceClient
from ..scraper.dialects import PageResult, RawRecord
from .outcome import PageCounts, SourceOutcome, TaskOutcome, decide_outcome

logger = get_logger(__name__)

DONE = "done"


class CollectionOrchestrator:
    """Starts, drives, cancels and resumes collection tasks"""

    def __init__(
        self,
        database: Database,
        client_factory: Callable[[], Any] = SourceClient,
        concurrency: Optional[int] = None,
        request_delay: Optional[float] = None,
        batch_delay: Optional[float] = None,
        batch_size: Optional[int] = None,
        videos: Optional[VideoRepository] = None,
        tasks: Optional[TaskRepository] = None,
        sources: Optional[SourceRegistry] = None,
    ):
        self.database = database
        self.client_factory = client_factory
        self.concurrency = concurrency or settings.SOURCE_CONCURRENCY
        self.request_delay = settings.REQUEST_DELAY if request_delay is None else request_delay
        self.batch_delay = settings.BATCH_DELAY if batch_delay is None else batch_delay
        self.batch_size = batch_size or settings.BATCH_SIZE

        factory = database.session_factory
        self.videos = videos or VideoRepository(factory)
        self.tasks = tasks or TaskRepository(factory)
        self.sources = sources or SourceRegistry(factory)

        self._running: Dict[UUID, asyncio.Task] = {}

    # Triggers

    async def run_incremental(self, max_pages: Optional[int] = None) -> UUID:
        """Collect the newest pages of every source"""
        return await self._start("incremental", None, max_pages or settings.INCREMENTAL_MAX_PAGES)

    async def run_full(self) -> UUID:
        """Collect every page of every source"""
        return await self._start("full", None, None)

    async def run_category(self, category_id: int, max_pages: Optional[int] = None) -> UUID:
        """Collect one category from the sources that serve it"""
        return await self._start("category", category_id, max_pages or settings.CATEGORY_MAX_PAGES)

    async def run_source(self, source_name: str, max_pages: Optional[int] = None) -> UUID:
        """
        Collect one source, every page unless max_pages is given

        The source is collected even when its health is over the failure
        threshold.

        Raises:
            SourceNotFound: no enabled source with that name
        """
        await self.sources.get_config(source_name)
        return await self._start("source", None, max_pages, source_name)

    async def _start(
        self,
        task_type: str,
        category: Optional[int],
        max_pages: Optional[int],
        source_name: Optional[str] = None,
    ) -> UUID:
        task = await self.tasks.start_task(task_type, category, max_pages, target_source=source_name)
        await self.tasks.mark_running(task.id)
        self._launch(task, checkpoint={})
        return task.id

    def _launch(self, task: CollectionTask, checkpoint: Dict[str, Any]) -> None:
        self._running[task.id] = asyncio.create_task(
            self._run_task(task, checkpoint),
            name=f"collect-{task.id}",
        )

    # Control

    async def cancel(self, task_id: UUID) -> bool:
        """Ask a task to stop at its next page boundary"""
        return await self.tasks.request_cancel(task_id)

    async def resume(self, task_id: UUID) -> bool:
        """
        Re-drive a running task from its checkpoint (e.g. after a restart)

        Terminal tasks are never reopened; returns False for them and for
        tasks already being driven by this process.
        """
        task = await self.tasks.get(task_id)
        if task.status != "running" or task_id in self._running:
            return False

        await self.tasks.reclaim_lease(task)
        logger.info(f"Resuming task {task_id} from {task.checkpoint}", extra={"run_id": str(task_id)})
        self._launch(task, checkpoint=dict(task.checkpoint or {}))
        return True

    async def resume_all(self) -> List[UUID]:
        """Resume every task left running by a previous process"""
        resumed = []
        for task in await self.tasks.list_running():
            if await self.resume(task.id):
                resumed.append(task.id)
        return resumed

    async def get_snapshot(self, task_id: UUID) -> TaskSnapshot:
        return await self.tasks.snapshot(task_id)

    async def wait(self, task_id: UUID, timeout: Optional[float] = None) -> TaskSnapshot:
        """Wait for a task driven by this process to finish"""
        runner = self._running.get(task_id)
        if runner is not None:
            await asyncio.wait_for(asyncio.shield(runner), timeout)
        return await self.get_snapshot(task_id)

    async def shutdown(self) -> None:
        """Stop driving tasks; they stay 'running' in the database for resume()"""
        runners = list(self._running.values())
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    # Execution

    async def _run_task(self, task: CollectionTask, checkpoint: Dict[str, Any]) -> None:
        task_id = task.id
        try:
            with PerformanceLogger(logger, f"{task.type} collection", run_id=str(task_id)):
                outcome = await self._execute(
                    task_id, task.target_category, task.target_source, task.max_pages, checkpoint
                )
            await self.tasks.finish(task_id, outcome)
        except TaskAbort as e:
            logger.error(f"Task {task_id} aborted: {e}", extra={"run_id": str(task_id)})
            await self.tasks.finish(task_id, e.outcome)
        except asyncio.CancelledError:
            logger.info(f"Task {task_id} interrupted; it can be resumed", extra={"run_id": str(task_id)})
            raise
        except Exception as e:
            logger.error(f"Task {task_id} crashed: {e}", exc_info=True, extra={"run_id": str(task_id)})
            await self.tasks.finish(task_id, TaskOutcome(status="failed", last_error=str(e)))
        finally:
            self._running.pop(task_id, None)

    async def _execute(
        self,
        task_id: UUID,
        category: Optional[int],
        source_name: Optional[str],
        max_pages: Optional[int],
        checkpoint: Dict[str, Any],
    ) -> TaskOutcome:
        if source_name is not None:
            runnable, skipped = [await self.sources.get_config(source_name)], []
        else:
            runnable, skipped = await self.sources.list_for_collection(category)
        logger.info(
            f"Collecting from {len(runnable)} sources ({len(skipped)} skipped)",
            extra={"run_id": str(task_id)}
        )

        semaphore = asyncio.Semaphore(self.concurrency)
        planned: Dict[str, int] = {}

        async with self.client_factory() as client:
            results = await asyncio.gather(*[
                self._collect_source(
                    semaphore, client, task_id, source, category, max_pages,
                    checkpoint.get(source.name), planned,
                )
                for source in runnable
            ], return_exceptions=True)

        per_source = []
        for source, result in zip(runnable, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"{source.name}: collection crashed: {result!r}",
                    exc_info=result,
                    extra={"run_id": str(task_id), "source_id": source.name}
                )
                await self.tasks.record_error(task_id, f"{source.name}: {result}")
                result = SourceOutcome(source=source.name, status="failed", errors=1, error=str(result))
            per_source.append(result)
        per_source += [SourceOutcome(source=name, status="skipped") for name in skipped]
        outcome = decide_outcome(per_source)
        if outcome.status == "failed":
            raise TaskAbort(outcome.last_error, outcome=outcome)
        return outcome

    async def _collect_source(
        self,
        semaphore: asyncio.Semaphore,
        client,
        task_id: UUID,
        source: SourceConfig,
        category: Optional[int],
        max_pages: Optional[int],
        resume_from: Any,
        planned: Dict[str, int],
    ) -> SourceOutcome:
        outcome = SourceOutcome(source=source.name)
        if resume_from == DONE:
            return outcome

        page = resume_from if isinstance(resume_from, int) and resume_from > 0 else 1
        log_extra = {"run_id": str(task_id), "source_id": source.name}

        async with semaphore:
            while True:
                if await self.tasks.is_cancel_requested(task_id):
                    outcome.status = "cancelled"
                    logger.info(f"{source.name}: cancelled before page {page}", extra=log_extra)
                    break

                try:
                    result = await client.fetch_list_page(source, category, page)
                except SourceUnavailable as e:
                    outcome.errors += 1
                    outcome.error = str(e)
                    outcome.status = "partial" if outcome.pages else "failed"
                    await self.tasks.record_error(task_id, str(e))
                    logger.warning(f"{source.name}: page {page} unavailable: {e}", extra=log_extra)
                    break

                last_page = result.page_count if max_pages is None else min(result.page_count, max_pages)
                planned[source.name] = max(last_page, page)

                counts = await self._process_page(client, source, result)
                outcome.add_page(counts)

                finished = not result.has_more or page >= last_page
                await self.tasks.record_page(
                    task_id,
                    source.name,
                    DONE if finished else page + 1,
                    counts,
                    total_pages=sum(planned.values()),
                )
                logger.info(
                    f"{source.name}: page {page}/{last_page} "
                    f"+{counts.created} ~{counts.updated} ={counts.skipped} !{counts.errors}",
                    extra=log_extra
                )

                if finished:
                    break
                page += 1
                if self.batch_delay:
                    await asyncio.sleep(self.batch_delay)

        if outcome.status != "cancelled":
            await self.sources.record_health(
                source.name,
                success=outcome.status != "failed",
                error=outcome.error,
            )
        return outcome

    async def _process_page(self, client, source: SourceConfig, result: PageResult) -> PageCounts:
        counts = PageCounts()
        records = await self._with_details(client, source, result.records, counts)

        for raw in records:
            try:
                record = normalize(raw, source)
                merged = await self.videos.reconcile(record, source)
            except (MalformedRecord, MergeConflict, SQLAlchemyError) as e:
                counts.add_error(str(e))
                logger.warning(
                    f"{source.name}: skipped record {raw.external_id or '?'}: {e}",
                    extra={"source_id": source.name, "item_id": raw.external_id}
                )
                continue

            if merged.action == "created":
                counts.created += 1
            elif merged.changed:
                counts.updated += 1
            else:
                counts.skipped += 1

        return counts

    async def _with_details(
        self,
        client,
        source: SourceConfig,
        records: List[RawRecord],
        counts: PageCounts,
    ) -> List[RawRecord]:
        """Fill in records whose list entry carried no playback URLs"""
        missing = [i for i, r in enumerate(records) if not r.has_play_urls and r.external_id]
        if not missing:
            return records

        enriched = list(records)

        async def fetch(index: int, position: int):
            if position and self.request_delay:
                await asyncio.sleep(self.request_delay * position)
            raw = records[index]
            try:
                detail = await client.fetch_detail(source, raw.external_id)
            except SourceUnavailable as e:
                counts.add_error(str(e))
                return
            if detail is not None:
                enriched[index] = RawRecord(dialect=raw.dialect, fields={**raw.fields, **detail.fields})

        for start in range(0, len(missing), self.batch_size):
            batch = missing[start:start + self.batch_size]
            await asyncio.gather(*[fetch(index, position) for position, index in enumerate(batch)])
            if start + self.batch_size < len(missing) and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

        return enriched
