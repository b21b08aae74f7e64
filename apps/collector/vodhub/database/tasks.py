"""
Database operations for collection tasks and their scope leases
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..collector.outcome import PageCounts, TaskOutcome
from ..config import settings
from ..errors import TaskAlreadyRunning, TaskNotFound
from ..logging_config import get_logger
from ..models import CollectionTask, TaskLease, task_scope
from ..models.base import utcnow
from ..models.tasks import TERMINAL_STATUSES

logger = get_logger(__name__)

ACTIVE_STATUSES = ("pending", "running")


class TaskSnapshot(BaseModel):
    """Progress view of a collection task"""
    id: str
    type: str
    status: str
    target_category: Optional[int] = None
    target_source: Optional[str] = None
    max_pages: Optional[int] = None
    current_page: int
    total_pages: Optional[int] = None
    progress: Optional[float] = None
    videos_collected: int
    videos_updated: int
    videos_skipped: int
    error_count: int
    last_error: Optional[str] = None
    cancel_requested: bool
    checkpoint: Dict[str, Any]
    source_outcomes: List[Dict[str, Any]]
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: CollectionTask) -> "TaskSnapshot":
        progress = None
        if task.status == "completed":
            progress = 100.0
        elif task.total_pages:
            progress = round(min(100.0, task.current_page * 100.0 / task.total_pages), 1)

        return cls(
            id=str(task.id),
            type=task.type,
            status=task.status,
            target_category=task.target_category,
            target_source=task.target_source,
            max_pages=task.max_pages,
            current_page=task.current_page,
            total_pages=task.total_pages,
            progress=progress,
            videos_collected=task.videos_collected,
            videos_updated=task.videos_updated,
            videos_skipped=task.videos_skipped,
            error_count=task.error_count,
            last_error=task.last_error,
            cancel_requested=task.cancel_requested,
            checkpoint=dict(task.checkpoint or {}),
            source_outcomes=list(task.source_outcomes or []),
            created_at=task.created_at,
            started_at=task.started_at,
            ended_at=task.ended_at,
        )


class TaskRepository:
    """Repository for collection task database operations"""

    def __init__(self, session_factory: async_sessionmaker, lease_ttl: Optional[int] = None):
        self.session_factory = session_factory
        self.lease_ttl = lease_ttl if lease_ttl is not None else settings.TASK_LEASE_TTL
        # Checkpoint is a JSON read-modify-write; sources of one task update it concurrently
        self._progress_lock = asyncio.Lock()

    async def _claim_lease(self, session: AsyncSession, scope: str, task_id: UUID) -> None:
        lease = await session.get(TaskLease, scope, with_for_update=True)
        if lease is None:
            session.add(TaskLease(scope=scope, task_id=task_id))
            await session.flush()
            return

        if lease.task_id != task_id:
            holder_status = (await session.execute(
                select(CollectionTask.status).where(CollectionTask.id == lease.task_id)
            )).scalar_one_or_none()

            cutoff = utcnow() - timedelta(seconds=self.lease_ttl)
            expired = (await session.execute(
                select(TaskLease.scope).where(
                    TaskLease.scope == scope,
                    TaskLease.acquired_at < cutoff,
                )
            )).scalar_one_or_none() is not None

            if holder_status in ACTIVE_STATUSES and not expired:
                raise TaskAlreadyRunning(scope, lease.task_id)

            logger.warning(
                f"Taking over lease for '{scope}' from task {lease.task_id} ({holder_status or 'missing'})",
                extra={"scope": scope, "run_id": str(task_id)}
            )

        lease.task_id = task_id
        lease.acquired_at = utcnow()

    async def start_task(
        self,
        task_type: str,
        target_category: Optional[int] = None,
        max_pages: Optional[int] = None,
        target_source: Optional[str] = None,
    ) -> CollectionTask:
        """
        Create a pending task and take its scope lease in one transaction

        Raises:
            TaskAlreadyRunning: another active task holds the scope
        """
        scope = task_scope(task_type, target_category, target_source)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    task = CollectionTask(
                        type=task_type,
                        status="pending",
                        target_category=target_category,
                        target_source=target_source,
                        max_pages=max_pages,
                        checkpoint={},
                        source_outcomes=[],
                    )
                    session.add(task)
                    await session.flush()
                    await self._claim_lease(session, scope, task.id)
        except IntegrityError:
            # Lost an insert race for the lease row
            holder = await self.get_lease(scope)
            raise TaskAlreadyRunning(scope, holder.task_id if holder else None)

        logger.info(f"Created {scope} task {task.id}", extra={"run_id": str(task.id), "scope": scope})
        return task

    async def reclaim_lease(self, task: CollectionTask) -> None:
        """Re-take the scope lease for a task being resumed"""
        async with self.session_factory() as session:
            async with session.begin():
                await self._claim_lease(session, task.scope, task.id)

    async def get_lease(self, scope: str) -> Optional[TaskLease]:
        async with self.session_factory() as session:
            return await session.get(TaskLease, scope)

    async def mark_running(self, task_id: UUID) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CollectionTask)
                    .where(CollectionTask.id == task_id)
                    .values(status="running", started_at=utcnow())
                )

    async def get(self, task_id: UUID) -> CollectionTask:
        async with self.session_factory() as session:
            task = await session.get(CollectionTask, task_id)
        if task is None:
            raise TaskNotFound(f"Collection task {task_id} not found")
        return task

    async def snapshot(self, task_id: UUID) -> TaskSnapshot:
        return TaskSnapshot.from_task(await self.get(task_id))

    async def list_tasks(self, limit: int = 20, status: Optional[str] = None) -> List[CollectionTask]:
        async with self.session_factory() as session:
            stmt = select(CollectionTask).order_by(CollectionTask.created_at.desc()).limit(limit)
            if status:
                stmt = stmt.where(CollectionTask.status == status)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_running(self) -> List[CollectionTask]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CollectionTask).where(CollectionTask.status == "running")
            )
            return list(result.scalars().all())

    async def record_page(
        self,
        task_id: UUID,
        source_name: str,
        next_page: Any,
        counts: PageCounts,
        total_pages: Optional[int] = None,
    ) -> None:
        """
        Add one page's counters and move the source's checkpoint

        Counters are incremented in SQL so concurrent sources never lose updates.
        """
        async with self._progress_lock:
            async with self.session_factory() as session:
                async with session.begin():
                    checkpoint = (await session.execute(
                        select(CollectionTask.checkpoint).where(CollectionTask.id == task_id)
                    )).scalar_one()
                    checkpoint = dict(checkpoint or {})
                    checkpoint[source_name] = next_page

                    values = {
                        "current_page": CollectionTask.current_page + 1,
                        "videos_collected": CollectionTask.videos_collected + counts.created,
                        "videos_updated": CollectionTask.videos_updated + counts.updated,
                        "videos_skipped": CollectionTask.videos_skipped + counts.skipped,
                        "error_count": CollectionTask.error_count + counts.errors,
                        "checkpoint": checkpoint,
                    }
                    if counts.last_error:
                        values["last_error"] = counts.last_error
                    if total_pages is not None:
                        values["total_pages"] = total_pages

                    await session.execute(
                        update(CollectionTask).where(CollectionTask.id == task_id).values(**values)
                    )
                    # Progress keeps the lease alive
                    await session.execute(
                        update(TaskLease).where(TaskLease.task_id == task_id).values(acquired_at=utcnow())
                    )

    async def record_error(self, task_id: UUID, message: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CollectionTask)
                    .where(CollectionTask.id == task_id)
                    .values(error_count=CollectionTask.error_count + 1, last_error=message)
                )

    async def request_cancel(self, task_id: UUID) -> bool:
        """
        Flag a task for cancellation

        Returns:
            True when the task was still active

        Raises:
            TaskNotFound: no such task
        """
        task = await self.get(task_id)
        if task.is_terminal:
            return False

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CollectionTask)
                    .where(CollectionTask.id == task_id)
                    .values(cancel_requested=True)
                )
        logger.info(f"Cancellation requested for task {task_id}", extra={"run_id": str(task_id)})
        return True

    async def is_cancel_requested(self, task_id: UUID) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CollectionTask.cancel_requested).where(CollectionTask.id == task_id)
            )
            return bool(result.scalar_one_or_none())

    async def finish(self, task_id: UUID, outcome: TaskOutcome) -> None:
        """Move a task to its terminal status and release its lease"""
        values = {
            "status": outcome.status,
            "ended_at": utcnow(),
            "source_outcomes": [o.model_dump() for o in outcome.per_source],
        }
        if outcome.last_error:
            values["last_error"] = outcome.last_error

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(CollectionTask).where(CollectionTask.id == task_id).values(**values)
                )
                await session.execute(
                    delete(TaskLease).where(TaskLease.task_id == task_id)
                )

        logger.info(
            f"Task {task_id} {outcome.status}",
            extra={"run_id": str(task_id), "extra_fields": {"error_count": outcome.error_count}}
        )

    async def prune_tasks(self, older_than_days: Optional[int] = None) -> int:
        """Delete finished tasks that ended before the retention window; returns how many"""
        days = settings.TASK_RETENTION_DAYS if older_than_days is None else older_than_days
        cutoff = utcnow() - timedelta(days=days)

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(CollectionTask).where(
                        CollectionTask.status.in_(TERMINAL_STATUSES),
                        CollectionTask.ended_at < cutoff,
                    )
                )

        logger.info(f"Pruned {result.rowcount} tasks older than {days} days")
        return result.rowcount
