"""
Repositories for database operations.

Implements the storage primitives of the queue: every state transition is a
single conditional UPDATE keyed on the row's current status (and attempt
count where it matters). A zero rowcount means another tick got there
first; callers treat that as "not mine", never as an application error.
"""

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from taskqueue.constants import DeadLetterStatus, JobStatus
from taskqueue.db.models import CacheEntry, DeadLetter, Job

logger = logging.getLogger(__name__)

CLAIM_ORDER = (
    Job.priority.desc(),
    Job.scheduled_for.asc(),
    Job.created_at.asc(),
    Job.id.asc(),
)


class JobRepository:
    """
    Repository for job rows.

    Implements atomic operations for:
    - Job insertion (single and bulk)
    - Claiming with a status-guarded UPDATE (FOR UPDATE SKIP LOCKED on PostgreSQL)
    - Completion, rescheduling and terminal failure
    - Lease expiry lookup
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        job_type: str,
        payload: dict[str, Any],
        now: datetime,
        user_id: str | None = None,
        priority: int = 5,
        scheduled_for: datetime | None = None,
        max_attempts: int = 3,
    ) -> Job:
        """
        Insert a new pending job.

        Args:
            job_type: Processor name.
            payload: Processor-specific data.
            now: Current time.
            user_id: Optional owning user.
            priority: Higher is more urgent.
            scheduled_for: Earliest claim time; defaults to now.
            max_attempts: Attempts before dead-lettering.

        Returns:
            The new Job.
        """
        job = Job(
            id=uuid.uuid4(),
            type=job_type,
            payload=payload,
            user_id=user_id,
            priority=priority,
            scheduled_for=scheduled_for or now,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
            error_history=[],
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()
        return job

    async def create_jobs(self, rows: Sequence[dict[str, Any]]) -> list[uuid.UUID]:
        """
        Insert many jobs with one bulk INSERT.

        Args:
            rows: Column values per job; ids are assigned here.

        Returns:
            The new job ids, in input order.
        """
        if not rows:
            return []

        values = [{**row, "id": uuid.uuid4()} for row in rows]
        await self._session.execute(insert(Job), values)
        return [row["id"] for row in values]

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        """
        Get a job by ID, bypassing the identity map so the row is current.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_claim_candidates(self, now: datetime, limit: int = 5) -> list[uuid.UUID]:
        """
        Find ids of eligible jobs in claim order.

        On PostgreSQL the rows are locked with FOR UPDATE SKIP LOCKED so
        concurrent claimers skip each other's candidates; other dialects
        ignore the locking clause and rely on the guarded UPDATE alone.

        Args:
            now: Current time.
            limit: Maximum number of candidates.

        Returns:
            Candidate job ids, most urgent first.
        """
        stmt = (
            select(Job.id)
            .where(
                and_(
                    Job.status == JobStatus.PENDING.value,
                    Job.scheduled_for <= now,
                )
            )
            .order_by(*CLAIM_ORDER)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def claim_job(
        self,
        job_id: uuid.UUID,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """
        Transition a job from PENDING to PROCESSING.

        The WHERE clause re-checks status and schedule, so only one caller
        can win a given job.

        Args:
            job_id: The job UUID.
            now: Current time.
            lease_expires_at: When the claim becomes reclaimable.

        Returns:
            True if this caller claimed the job.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.PENDING.value,
                    Job.scheduled_for <= now,
                )
            )
            .values(
                status=JobStatus.PROCESSING.value,
                attempts=Job.attempts + 1,
                started_at=now,
                lease_expires_at=lease_expires_at,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def complete_job(
        self,
        job_id: uuid.UUID,
        result: Any,
        now: datetime,
    ) -> bool:
        """
        Mark a processing job as completed.

        Args:
            job_id: The job UUID.
            result: Processor output.
            now: Current time.

        Returns:
            True if the transition happened.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING.value,
                )
            )
            .values(
                status=JobStatus.COMPLETED.value,
                result=result,
                completed_at=now,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        outcome = await self._session.execute(stmt)
        return outcome.rowcount == 1

    async def reschedule_job(
        self,
        job_id: uuid.UUID,
        expected_attempts: int,
        error: str,
        error_history: list[dict[str, Any]],
        scheduled_for: datetime,
        now: datetime,
    ) -> bool:
        """
        Return a failed attempt to PENDING with a delayed schedule.

        Guarded on status and on the attempt count the caller observed, so a
        concurrent reclaim or re-claim cannot be overwritten.

        Returns:
            True if the transition happened.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.attempts == expected_attempts,
                )
            )
            .values(
                status=JobStatus.PENDING.value,
                last_error=error,
                error_history=error_history,
                scheduled_for=scheduled_for,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_failed(
        self,
        job_id: uuid.UUID,
        expected_attempts: int,
        error: str,
        error_history: list[dict[str, Any]],
        now: datetime,
    ) -> bool:
        """
        Move a processing job to the terminal FAILED state.

        Returns:
            True if the transition happened.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.attempts == expected_attempts,
                )
            )
            .values(
                status=JobStatus.FAILED.value,
                last_error=error,
                error_history=error_history,
                completed_at=now,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def release_job(self, job_id: uuid.UUID, now: datetime) -> bool:
        """
        Hand a claimed job back without consuming the attempt.

        Returns:
            True if the transition happened.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING.value,
                )
            )
            .values(
                status=JobStatus.PENDING.value,
                attempts=Job.attempts - 1,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def find_expired_leases(self, now: datetime, limit: int = 100) -> Sequence[Job]:
        """
        Find processing jobs whose lease has run out.

        Args:
            now: Current time.
            limit: Maximum rows to return.

        Returns:
            Abandoned jobs, oldest lease first.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.status == JobStatus.PROCESSING.value,
                    Job.lease_expires_at < now,
                )
            )
            .order_by(Job.lease_expires_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_user_jobs(self, user_id: str, limit: int = 10) -> Sequence[Job]:
        """
        List a user's jobs, most recent first.

        Args:
            user_id: The owning user.
            limit: Maximum number of jobs to return.

        Returns:
            Jobs ordered by created_at descending.
        """
        stmt = (
            select(Job)
            .where(Job.user_id == user_id)
            .order_by(Job.created_at.desc(), Job.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_pending_due(self, now: datetime) -> int:
        """Count pending jobs whose scheduled time has arrived."""
        stmt = select(func.count()).select_from(Job).where(
            and_(
                Job.status == JobStatus.PENDING.value,
                Job.scheduled_for <= now,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_by_status(self, status: JobStatus) -> int:
        """Count jobs in a given status."""
        stmt = select(func.count()).select_from(Job).where(Job.status == status.value)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job counts by status.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def delete_finished_before(self, cutoff: datetime) -> int:
        """
        Delete completed and failed jobs that finished before the cutoff.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(Job).where(
            and_(
                Job.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]),
                Job.completed_at < cutoff,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount


class DeadLetterRepository:
    """Repository for dead letter rows."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        job: Job,
        final_error: str,
        failure_history: list[dict[str, Any]],
        now: datetime,
    ) -> DeadLetter:
        """
        Record a job that exhausted its attempts.

        Args:
            job: The failed job (as observed before the terminal update).
            final_error: The error of the last attempt.
            failure_history: Every attempt's error, in order.
            now: Current time.

        Returns:
            The new DeadLetter.
        """
        entry = DeadLetter(
            id=uuid.uuid4(),
            original_job_id=job.id,
            job_type=job.type,
            user_id=job.user_id,
            payload=job.payload,
            failure_history=failure_history,
            final_error=final_error,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            original_created_at=job.created_at,
            status=DeadLetterStatus.DEAD.value,
            created_at=now,
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def get(self, dlq_id: uuid.UUID) -> DeadLetter | None:
        stmt = (
            select(DeadLetter)
            .where(DeadLetter.id == dlq_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_entries(
        self,
        status: DeadLetterStatus | None = None,
        job_type: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[DeadLetter]:
        """
        List dead letters with optional filters, newest first.

        Args:
            status: Optional status filter.
            job_type: Optional job type filter.
            user_id: Optional user filter.
            limit: Page size.
            offset: Page offset.

        Returns:
            Matching dead letters.
        """
        filters = []
        if status is not None:
            filters.append(DeadLetter.status == status.value)
        if job_type is not None:
            filters.append(DeadLetter.job_type == job_type)
        if user_id is not None:
            filters.append(DeadLetter.user_id == user_id)

        stmt = select(DeadLetter)
        if filters:
            stmt = stmt.where(and_(*filters))
        stmt = (
            stmt.order_by(DeadLetter.created_at.desc(), DeadLetter.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_ids(self, status: DeadLetterStatus, job_type: str) -> list[uuid.UUID]:
        """List ids of every entry with a status and job type, oldest first."""
        stmt = (
            select(DeadLetter.id)
            .where(
                and_(
                    DeadLetter.status == status.value,
                    DeadLetter.job_type == job_type,
                )
            )
            .order_by(DeadLetter.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(DeadLetter.status, func.count()).group_by(DeadLetter.status)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def count_by_type(self, status: DeadLetterStatus) -> dict[str, int]:
        stmt = (
            select(DeadLetter.job_type, func.count())
            .where(DeadLetter.status == status.value)
            .group_by(DeadLetter.job_type)
        )
        result = await self._session.execute(stmt)
        return {job_type: count for job_type, count in result.all()}

    async def mark_retrying(self, dlq_id: uuid.UUID, new_job_id: uuid.UUID) -> bool:
        """
        Transition DEAD -> RETRYING and link the replacement job.

        Returns:
            True if the transition happened.
        """
        stmt = (
            update(DeadLetter)
            .where(
                and_(
                    DeadLetter.id == dlq_id,
                    DeadLetter.status == DeadLetterStatus.DEAD.value,
                )
            )
            .values(
                status=DeadLetterStatus.RETRYING.value,
                retried_job_id=new_job_id,
                resolution_notes=f"Retried as job {new_job_id}",
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def resolve(
        self,
        dlq_id: uuid.UUID,
        notes: str,
        resolved_by: str | None,
        now: datetime,
    ) -> bool:
        """
        Mark an unresolved entry as RESOLVED.

        Returns:
            True if the transition happened.
        """
        stmt = (
            update(DeadLetter)
            .where(
                and_(
                    DeadLetter.id == dlq_id,
                    DeadLetter.status != DeadLetterStatus.RESOLVED.value,
                )
            )
            .values(
                status=DeadLetterStatus.RESOLVED.value,
                resolution_notes=notes,
                resolved_by=resolved_by,
                resolved_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def delete_resolved_before(self, cutoff: datetime) -> int:
        """
        Hard-delete resolved entries resolved before the cutoff.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(DeadLetter).where(
            and_(
                DeadLetter.status == DeadLetterStatus.RESOLVED.value,
                DeadLetter.resolved_at < cutoff,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount


class CacheRepository:
    """Repository for cache rows."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_live(
        self,
        namespace: str,
        cache_key: str,
        now: datetime,
    ) -> CacheEntry | None:
        """
        Get an entry only if it has not expired.

        Args:
            namespace: Cache namespace.
            cache_key: Hashed key.
            now: Current time.

        Returns:
            The live CacheEntry or None.
        """
        stmt = select(CacheEntry).where(
            and_(
                CacheEntry.namespace == namespace,
                CacheEntry.cache_key == cache_key,
                CacheEntry.expires_at > now,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def touch(self, namespace: str, cache_key: str, now: datetime) -> None:
        """Record a read: bump access_count in the database, not in memory."""
        stmt = (
            update(CacheEntry)
            .where(
                and_(
                    CacheEntry.namespace == namespace,
                    CacheEntry.cache_key == cache_key,
                )
            )
            .values(
                access_count=CacheEntry.access_count + 1,
                accessed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def upsert(
        self,
        namespace: str,
        cache_key: str,
        value: Any,
        expires_at: datetime,
        now: datetime,
        meta: dict[str, Any] | None = None,
    ) -> None:
        """
        Insert or replace an entry.

        Uses INSERT ... ON CONFLICT DO UPDATE on the (namespace, cache_key)
        primary key.
        """
        dialect = self._session.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert

        stmt = insert_fn(CacheEntry).values(
            namespace=namespace,
            cache_key=cache_key,
            value=value,
            meta=meta,
            expires_at=expires_at,
            created_at=now,
            accessed_at=now,
            access_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["namespace", "cache_key"],
            set_={
                "value": stmt.excluded.value,
                "meta": stmt.excluded.meta,
                "expires_at": stmt.excluded.expires_at,
                "created_at": stmt.excluded.created_at,
                "accessed_at": stmt.excluded.accessed_at,
                "access_count": 1,
            },
        )
        await self._session.execute(stmt)

    async def delete(self, namespace: str, cache_key: str) -> bool:
        stmt = delete(CacheEntry).where(
            and_(
                CacheEntry.namespace == namespace,
                CacheEntry.cache_key == cache_key,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def delete_namespace(self, namespace: str) -> int:
        stmt = delete(CacheEntry).where(CacheEntry.namespace == namespace)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def delete_expired(self, now: datetime) -> int:
        stmt = delete(CacheEntry).where(CacheEntry.expires_at < now)
        result = await self._session.execute(stmt)
        return result.rowcount

    async def stats_by_namespace(self) -> dict[str, tuple[int, int]]:
        """
        Entry counts per namespace.

        Returns:
            Dictionary of namespace -> (entries, entries read at least once
            after being written).
        """
        reused = func.sum(case((CacheEntry.access_count > 1, 1), else_=0))
        stmt = select(CacheEntry.namespace, func.count(), reused).group_by(
            CacheEntry.namespace
        )
        result = await self._session.execute(stmt)
        return {
            namespace: (count, int(reused_count or 0))
            for namespace, count, reused_count in result.all()
        }
