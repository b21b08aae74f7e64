"""
Collection task models - Run history and the per-scope running lease
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .base import Base, utcnow

TASK_TYPES = ("incremental", "full", "category", "source")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class CollectionTask(Base):
    __tablename__ = "collection_tasks"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique identifier for this run"
    )

    # Run metadata
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        doc="Run scope: 'incremental', 'full', 'category', 'source'"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default="pending",
        nullable=False,
        index=True,
        doc="Run status: 'pending', 'running', 'completed', 'failed', 'cancelled'"
    )
    target_category: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    target_source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    max_pages: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        doc="Page cap per source (null = until the source runs out)"
    )

    # Progress
    current_page: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    videos_collected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    videos_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    videos_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Control and resume state
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    checkpoint: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        doc="Source name -> next page to fetch, or 'done'"
    )
    source_outcomes: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Per-source results recorded at the terminal transition"
    )

    # Execution tracking
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def scope(self) -> str:
        return task_scope(self.type, self.target_category, self.target_source)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<CollectionTask(id={self.id}, type='{self.type}', status='{self.status}')>"


class TaskLease(Base):
    """At most one running task per scope holds this row"""
    __tablename__ = "task_leases"

    scope: Mapped[str] = mapped_column(String(120), primary_key=True)
    task_id: Mapped[UUID] = mapped_column(
        ForeignKey("collection_tasks.id", ondelete="CASCADE"),
        nullable=False
    )
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<TaskLease(scope='{self.scope}', task_id={self.task_id})>"


def task_scope(task_type: str, category: Optional[int] = None, source_name: Optional[str] = None) -> str:
    if task_type == "category":
        return f"category:{category}"
    if task_type == "source":
        return f"source:{source_name}"
    return task_type
