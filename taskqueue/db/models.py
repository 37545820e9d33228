"""
SQLAlchemy database models.
Defines the jobs, dead_letters and cache_entries tables.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from taskqueue.clock import utcnow
from taskqueue.constants import DeadLetterStatus, JobStatus

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state. Every status
    transition is a conditional update keyed on the current status, so
    overlapping ticks never process the same claim twice.

    Key constraints:
    - a job is claimable iff status is pending and scheduled_for <= now
    - lease_expires_at bounds how long a processing job stays owned
    - error_history keeps one entry per failed attempt for the dead letter
    """

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Status and ordering
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobStatus.PENDING.value,
        index=True,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )

    # Lease management
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    result: Mapped[Any | None] = mapped_column(JSONType, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # Queue polling: eligible pending jobs by priority then schedule
        Index("ix_jobs_claim_order", "status", "priority", "scheduled_for"),
        # Lease expiry checks
        Index("ix_jobs_lease_expiry", "status", "lease_expires_at"),
        Index("ix_jobs_user_created", "user_id", "created_at"),
    )

    @property
    def is_retryable(self) -> bool:
        """Check if another attempt is allowed after the current one."""
        return self.attempts < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.type}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class DeadLetter(Base):
    """
    A job that exhausted its attempts, held for operator inspection.

    original_job_id is unique: a job is dead-lettered at most once. Retrying
    creates a new job and keeps this row for audit.
    """

    __tablename__ = "dead_letters"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    original_job_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    failure_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    final_error: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    original_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeadLetterStatus.DEAD.value,
        index=True,
    )
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    retried_job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("original_job_id", name="uq_dead_letters_original_job"),
    )

    def __repr__(self) -> str:
        return (
            f"DeadLetter(id={self.id}, job={self.original_job_id}, "
            f"type={self.job_type}, status={self.status})"
        )


class CacheEntry(Base):
    """Memoized processor output with an absolute expiry."""

    __tablename__ = "cache_entries"

    namespace: Mapped[str] = mapped_column(String(50), primary_key=True)
    cache_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    accessed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"CacheEntry(namespace={self.namespace}, key={self.cache_key[:12]})"
