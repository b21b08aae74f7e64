"""
Database package for the VodHub collector
"""

from .session import Database, get_database
from .sources import SourceRegistry
from .tasks import TaskRepository, TaskSnapshot
from .videos import KeyedLock, ValidationWrite, VideoRepository

__all__ = [
    "Database",
    "get_database",
    "SourceRegistry",
    "TaskRepository",
    "TaskSnapshot",
    "KeyedLock",
    "ValidationWrite",
    "VideoRepository",
]
