"""
Error taxonomy for the collection and reconciliation pipeline

Per-item errors (one record, one URL, one page) are caught and counted at the
narrowest scope; only TaskAbort fails a collection task outright.
"""
from typing import Optional


class CollectorError(Exception):
    """Base class for pipeline errors"""


class SourceUnavailable(CollectorError):
    """A resource site timed out, refused, or answered non-2xx after all retries"""

    def __init__(self, source_name: str, message: str, status: Optional[int] = None):
        super().__init__(f"{source_name}: {message}")
        self.source_name = source_name
        self.status = status


class SourcePayloadError(SourceUnavailable):
    """A resource site answered, but the body could not be parsed in its dialect"""


class MalformedRecord(CollectorError):
    """A raw record cannot be normalized (e.g. it has no title)"""

    def __init__(self, message: str, external_id: str = ""):
        super().__init__(message)
        self.external_id = external_id


class MergeConflict(CollectorError):
    """Concurrent writes to one canonical row kept conflicting after all attempts"""

    def __init__(self, match_key: str, attempts: int):
        super().__init__(f"Conflicting writes for '{match_key}' after {attempts} attempts")
        self.match_key = match_key
        self.attempts = attempts


class ValidationProbeFailure(CollectorError):
    """One playback URL could not be reached"""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class TaskAbort(CollectorError):
    """Every source in a task's scope was unavailable"""

    def __init__(self, message: str, outcome=None):
        super().__init__(message)
        self.outcome = outcome


class TaskAlreadyRunning(CollectorError):
    """A task for the same scope already holds the lease"""

    def __init__(self, scope: str, task_id):
        super().__init__(f"Scope '{scope}' is already being collected by task {task_id}")
        self.scope = scope
        self.task_id = task_id


class TaskNotFound(CollectorError):
    """No collection task with the given id"""


class SourceNotFound(CollectorError):
    """No enabled resource site with the given name"""
