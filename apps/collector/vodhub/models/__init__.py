"""
SQLAlchemy models for the VodHub collector
"""
from .base import Base
from .sources import Source, SourceConfig
from .source_health import SourceHealth
from .videos import CanonicalVideo
from .tasks import CollectionTask, TaskLease, task_scope
from .reports import InvalidUrlReport

# Export all models
__all__ = [
    "Base",
    "Source",
    "SourceConfig",
    "SourceHealth",
    "CanonicalVideo",
    "CollectionTask",
    "TaskLease",
    "task_scope",
    "InvalidUrlReport",
]
