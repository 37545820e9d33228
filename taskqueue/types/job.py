"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from taskqueue.queue.cache_service import CacheService
    from taskqueue.worker.collaborators import Collaborators


class EnqueueSpec(BaseModel):
    """One job of a batch enqueue."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    priority: int | None = None
    scheduled_for: datetime | None = None
    max_attempts: int | None = None


class QueueStatus(BaseModel):
    """Point-in-time queue counts."""

    pending: int
    processing: int


class TickResult(BaseModel):
    """
    Outcome of one processing tick.

    jobs_processed counts every claim that reached an outcome (completed,
    failed, unknown type, or lost because the job stopped being processing
    before its result was recorded).
    """

    jobs_processed: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_lost: int = 0
    cache_entries_cleaned: int = 0
    execution_time_ms: float = 0.0
    queue_status: QueueStatus | None = None
    aborted: bool = False
    error: str | None = None


class DeadLetterStats(BaseModel):
    """Aggregate dead letter counts for dashboards."""

    total: int
    by_status: dict[str, int]
    # entries still awaiting a decision, per job type
    by_type: dict[str, int]


class CacheStats(BaseModel):
    """Aggregate cache counts."""

    total_entries: int
    by_namespace: dict[str, int]
    hit_rate: float


@dataclass
class JobContext:
    """
    Context passed to processors during execution.
    Contains the claimed job's data and the services a processor may use.
    """

    job_id: UUID
    job_type: str
    user_id: str | None
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    cache: "CacheService"
    collaborators: "Collaborators"
    now: datetime

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last attempt before dead-lettering."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining attempts after this one."""
        return max(0, self.max_attempts - self.attempt)
