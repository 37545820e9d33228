"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskqueue.clock import to_naive_utc
from taskqueue.constants import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    DeadLetterStatus,
    JobStatus,
    JobType,
)
from taskqueue.types.job import DeadLetterStats, QueueStatus


class EnqueueJobRequest(BaseModel):
    """Request body for enqueueing a job."""

    type: JobType = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    priority: int = Field(
        default=5, ge=MIN_PRIORITY, le=MAX_PRIORITY, description="Higher runs first"
    )
    scheduled_for: datetime | None = Field(
        default=None, description="Earliest execution time"
    )

    @field_validator("scheduled_for")
    @classmethod
    def normalize_scheduled_for(cls, value: datetime | None) -> datetime | None:
        return to_naive_utc(value) if value is not None else None


class EnqueueJobResponse(BaseModel):
    """Response body after enqueueing a job."""

    job_id: UUID
    status: JobStatus = JobStatus.PENDING
    message: str = "Job queued successfully"


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    payload: dict[str, Any]
    user_id: str | None
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    last_error: str | None
    result: Any | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class UserJobStats(QueueStatus):
    user_jobs: int


class UserJobsResponse(BaseModel):
    """A user's recent jobs plus queue counts."""

    jobs: list[JobResponse]
    stats: UserJobStats


class DeadLetterResponse(BaseModel):
    """Dead letter details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    original_job_id: UUID
    job_type: str
    user_id: str | None
    payload: dict[str, Any]
    failure_history: list[dict[str, Any]]
    final_error: str
    attempts: int
    max_attempts: int
    original_created_at: datetime
    status: DeadLetterStatus
    resolution_notes: str | None
    resolved_by: str | None
    retried_job_id: UUID | None
    created_at: datetime
    resolved_at: datetime | None


class DeadLetterListResponse(BaseModel):
    """Page of dead letters."""

    entries: list[DeadLetterResponse]
    limit: int
    offset: int
    stats: DeadLetterStats | None = None


class ResolveRequest(BaseModel):
    """Request body for resolving a dead letter."""

    notes: str = Field(..., min_length=1, description="Why no retry is needed")


class BulkRetryRequest(BaseModel):
    """Request body for retrying every dead letter of a job type."""

    job_type: str


class BulkRetryResponse(BaseModel):
    retried: int


class RetryResponse(BaseModel):
    """Response body after retrying a dead letter."""

    dead_letter_id: UUID
    job_id: UUID
    message: str = "Dead letter re-enqueued"


class PurgeRequest(BaseModel):
    older_than_days: int = Field(default=30, ge=0)


class PurgeResponse(BaseModel):
    deleted: int


class CacheCleanupResponse(BaseModel):
    deleted: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime
