"""
Per-source results of a collection run and the rule that turns them into a task status
"""
from typing import List, Optional

from pydantic import BaseModel, Field

SOURCE_STATUSES = ("completed", "partial", "failed", "cancelled", "skipped")


class PageCounts(BaseModel):
    """Merge results for one list page"""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    last_error: Optional[str] = None

    def add_error(self, message: str) -> None:
        self.errors += 1
        self.last_error = message


class SourceOutcome(BaseModel):
    source: str
    status: str = "completed"  # see SOURCE_STATUSES
    pages: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error: Optional[str] = None

    def add_page(self, counts: PageCounts) -> None:
        self.pages += 1
        self.created += counts.created
        self.updated += counts.updated
        self.skipped += counts.skipped
        self.errors += counts.errors
        if counts.last_error:
            self.error = counts.last_error


class TaskOutcome(BaseModel):
    status: str
    per_source: List[SourceOutcome] = Field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def error_count(self) -> int:
        return sum(o.errors for o in self.per_source)


def decide_outcome(per_source: List[SourceOutcome]) -> TaskOutcome:
    """
    Decide how a task ends from its sources' results

    - any source cancelled -> cancelled
    - every attempted source failed -> failed
    - otherwise -> completed, even when some sources failed (their errors stay counted)

    Skipped (unhealthy) sources are not attempted; a task with nothing to
    attempt completes.
    """
    last_error = None
    for o in per_source:
        if o.error:
            last_error = o.error

    if any(o.status == "cancelled" for o in per_source):
        return TaskOutcome(status="cancelled", per_source=per_source, last_error=last_error)

    attempted = [o for o in per_source if o.status != "skipped"]
    if attempted and all(o.status == "failed" for o in attempted):
        return TaskOutcome(
            status="failed",
            per_source=per_source,
            last_error=last_error or "All sources unavailable",
        )

    return TaskOutcome(status="completed", per_source=per_source, last_error=last_error)
