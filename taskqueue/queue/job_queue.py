"""
Job queue orchestrator.

Front-ends the jobs table: enqueue, claim, complete and fail. Owns the
retry-versus-dead-letter decision and the reclaim of jobs abandoned by a
tick that died mid-execution.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskqueue.clock import Clock, to_naive_utc, utcnow
from taskqueue.config import get_settings
from taskqueue.constants import LEASE_EXPIRED_ERROR, JobStatus
from taskqueue.db.connection import session_scope
from taskqueue.db.models import Job
from taskqueue.db.repository import DeadLetterRepository, JobRepository
from taskqueue.errors import NotFoundError
from taskqueue.observability.metrics import MetricsCollector, get_metrics
from taskqueue.types.job import EnqueueSpec

logger = logging.getLogger(__name__)

# Candidates fetched per claim round; losing a race moves to the next one
CLAIM_CANDIDATES = 5


class JobQueue:
    """
    Persistent priority queue of jobs.

    Every operation runs in its own committed transaction, so a tick that
    dies between operations never leaves a job half-updated.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        lease_duration_seconds: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        default_max_attempts: int | None = None,
        default_priority: int | None = None,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue.

        Args:
            session_factory: Factory for database sessions.
            lease_duration_seconds: How long a claim stays owned.
            backoff_base_seconds: Base of the exponential retry delay.
            backoff_max_seconds: Cap of the retry delay.
            default_max_attempts: Attempts before dead-lettering.
            default_priority: Priority when the caller gives none.
            clock: Source of the current (naive UTC) time.
            metrics: Metrics collector.
        """
        settings = get_settings()

        self._session_factory = session_factory
        self.lease_duration = timedelta(
            seconds=settings.lease_duration_seconds
            if lease_duration_seconds is None
            else lease_duration_seconds
        )
        self.backoff_base_seconds = (
            settings.backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self.backoff_max_seconds = (
            settings.backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )
        self.default_max_attempts = (
            settings.default_max_attempts if default_max_attempts is None else default_max_attempts
        )
        self.default_priority = (
            settings.default_priority if default_priority is None else default_priority
        )
        self._clock = clock
        self._metrics = metrics or get_metrics()

    def backoff_delay(self, attempts: int) -> timedelta:
        """
        Delay before the next attempt: base * 2^attempts, capped.

        Args:
            attempts: Attempts made so far.
        """
        seconds = min(self.backoff_base_seconds * (2 ** attempts), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
        priority: int | None = None,
        scheduled_for: datetime | None = None,
        max_attempts: int | None = None,
    ) -> UUID:
        """
        Add a job to the queue.

        The job type is not validated here; an unknown type fails when a
        tick dispatches it.

        Args:
            job_type: Processor name.
            payload: Processor-specific data.
            user_id: Optional owning user.
            priority: Higher is more urgent.
            scheduled_for: Earliest claim time; defaults to now.
            max_attempts: Attempts before dead-lettering.

        Returns:
            The new job id.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            repo = JobRepository(session)
            job = await repo.create_job(
                job_type=job_type,
                payload=payload or {},
                now=now,
                user_id=user_id,
                priority=self.default_priority if priority is None else priority,
                scheduled_for=to_naive_utc(scheduled_for) if scheduled_for else None,
                max_attempts=self.default_max_attempts if max_attempts is None else max_attempts,
            )
            job_id = job.id

        self._metrics.record_job_enqueued(job_type)
        logger.info(
            "Job enqueued",
            extra={"job_id": str(job_id), "job_type": job_type, "user_id": user_id},
        )
        return job_id

    async def batch_enqueue(self, jobs: Sequence[EnqueueSpec]) -> list[UUID]:
        """
        Add many jobs with a single bulk insert.

        All rows commit together or none do; a store error propagates to
        the caller.

        Args:
            jobs: Jobs to enqueue.

        Returns:
            The new job ids, in input order.
        """
        if not jobs:
            return []

        now = self._clock()
        rows = [
            {
                "type": spec.type,
                "payload": spec.payload,
                "user_id": spec.user_id,
                "priority": self.default_priority if spec.priority is None else spec.priority,
                "scheduled_for": to_naive_utc(spec.scheduled_for) if spec.scheduled_for else now,
                "status": JobStatus.PENDING.value,
                "attempts": 0,
                "max_attempts": (
                    self.default_max_attempts if spec.max_attempts is None else spec.max_attempts
                ),
                "error_history": [],
                "created_at": now,
                "updated_at": now,
            }
            for spec in jobs
        ]

        async with session_scope(self._session_factory) as session:
            job_ids = await JobRepository(session).create_jobs(rows)

        for spec in jobs:
            self._metrics.record_job_enqueued(spec.type)
        logger.info("Batch enqueued", extra={"job_count": len(job_ids)})
        return job_ids

    async def get_next_job(self) -> Job | None:
        """
        Claim the most urgent eligible job.

        Abandoned leases are reclaimed first. Candidates are tried in
        priority-then-schedule order; a candidate taken by a concurrent tick
        is skipped silently.

        Returns:
            The claimed job (status processing), or None if none is eligible.
        """
        await self.reclaim_abandoned()

        now = self._clock()
        lease_expires_at = now + self.lease_duration

        async with session_scope(self._session_factory) as session:
            repo = JobRepository(session)

            while True:
                candidates = await repo.find_claim_candidates(now, limit=CLAIM_CANDIDATES)
                if not candidates:
                    return None

                for job_id in candidates:
                    if await repo.claim_job(job_id, now, lease_expires_at):
                        job = await repo.get_job(job_id)
                        self._metrics.record_job_claimed(job.type)
                        logger.info(
                            "Job claimed",
                            extra={
                                "job_id": str(job.id),
                                "job_type": job.type,
                                "attempt": job.attempts,
                            },
                        )
                        return job

                    logger.debug("Claim lost to another tick", extra={"job_id": str(job_id)})

    async def complete_job(self, job_id: UUID, result: Any = None) -> bool:
        """
        Mark a processing job as completed.

        Args:
            job_id: The job UUID.
            result: JSON-serialisable processor output.

        Returns:
            True if completed; False if the job was no longer processing.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            completed = await JobRepository(session).complete_job(job_id, result, now)

        if completed:
            logger.info("Job completed", extra={"job_id": str(job_id)})
        else:
            logger.warning(
                "Job was not processing at completion; result discarded",
                extra={"job_id": str(job_id)},
            )
        return completed

    async def fail_job(self, job_id: UUID, error_message: str) -> bool:
        """
        Record a failed attempt: retry with backoff, or dead-letter.

        If attempts < max_attempts the job goes back to pending with a
        delayed schedule. Otherwise it becomes failed and a dead letter is
        created in the same transaction.

        Args:
            job_id: The job UUID.
            error_message: Why the attempt failed.

        Returns:
            True if the failure was recorded; False if the job was no
            longer processing.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            job = await JobRepository(session).get_job(job_id)
            if job is None or job.status != JobStatus.PROCESSING.value:
                logger.warning(
                    "Job was not processing at failure",
                    extra={"job_id": str(job_id), "error": error_message},
                )
                return False

            return await self._record_failure(session, job, error_message, now)

    async def release_job(self, job_id: UUID) -> bool:
        """
        Give a claimed job back without consuming the attempt.

        Used when a tick runs out of budget right after claiming.

        Returns:
            True if the job went back to pending.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            released = await JobRepository(session).release_job(job_id, now)

        if released:
            logger.info("Job released", extra={"job_id": str(job_id)})
        return released

    async def reclaim_abandoned(self) -> int:
        """
        Recover jobs whose lease expired while processing.

        Each abandoned job is treated as a failed attempt, so a job that
        keeps killing its tick still reaches the dead letter queue.

        Returns:
            Number of jobs reclaimed.
        """
        now = self._clock()
        reclaimed = 0

        async with session_scope(self._session_factory) as session:
            expired = await JobRepository(session).find_expired_leases(now)
            for job in expired:
                error = f"{LEASE_EXPIRED_ERROR} after {int(self.lease_duration.total_seconds())}s"
                if await self._record_failure(session, job, error, now):
                    reclaimed += 1

        if reclaimed > 0:
            self._metrics.record_leases_reclaimed(reclaimed)
            logger.warning(f"Reclaimed {reclaimed} abandoned jobs")
        return reclaimed

    async def _record_failure(
        self,
        session: AsyncSession,
        job: Job,
        error_message: str,
        now: datetime,
    ) -> bool:
        """Apply the retry-or-escalate decision to an observed processing job."""
        repo = JobRepository(session)
        history = [
            *job.error_history,
            {"error": error_message, "attempt": job.attempts, "at": now.isoformat()},
        ]

        if job.attempts < job.max_attempts:
            retry_at = now + self.backoff_delay(job.attempts)
            updated = await repo.reschedule_job(
                job.id, job.attempts, error_message, history, retry_at, now
            )
            if updated:
                self._metrics.record_job_finished(job.type, "retried")
                logger.info(
                    "Job scheduled for retry",
                    extra={
                        "job_id": str(job.id),
                        "attempt": job.attempts,
                        "retry_at": retry_at.isoformat(),
                        "error": error_message,
                    },
                )
            return updated

        updated = await repo.mark_failed(job.id, job.attempts, error_message, history, now)
        if not updated:
            return False

        entry = await DeadLetterRepository(session).create(job, error_message, history, now)
        self._metrics.record_job_finished(job.type, "failed")
        self._metrics.record_dead_letter(job.type)
        logger.warning(
            f"Job moved to dead letter queue after {job.attempts} attempts",
            extra={
                "job_id": str(job.id),
                "dead_letter_id": str(entry.id),
                "error": error_message,
            },
        )
        return True

    async def get_job(self, job_id: UUID) -> Job | None:
        """Get a job by id."""
        async with session_scope(self._session_factory) as session:
            return await JobRepository(session).get_job(job_id)

    async def get_user_jobs(self, user_id: str, limit: int = 10) -> list[Job]:
        """
        List a user's jobs, most recent first.

        Args:
            user_id: The owning user.
            limit: Maximum number of jobs.
        """
        async with session_scope(self._session_factory) as session:
            return list(await JobRepository(session).list_user_jobs(user_id, limit))

    async def get_pending_jobs_count(self) -> int:
        """Count pending jobs that are due now."""
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            return await JobRepository(session).count_pending_due(now)

    async def get_processing_jobs_count(self) -> int:
        """Count jobs currently claimed."""
        async with session_scope(self._session_factory) as session:
            return await JobRepository(session).count_by_status(JobStatus.PROCESSING)

    async def refresh_depth_metrics(self) -> dict[str, int]:
        """Publish job counts per status to the queue depth gauge."""
        async with session_scope(self._session_factory) as session:
            stats = await JobRepository(session).get_job_stats()

        for status in JobStatus:
            self._metrics.update_queue_depth(status.value, stats.get(status.value, 0))
        return stats

    async def cleanup_old_jobs(self, days_to_keep: int | None = None) -> int:
        """
        Delete completed and failed jobs older than the retention window.

        Dead letters keep their own copy of failed jobs' data.

        Args:
            days_to_keep: Retention window in days.

        Returns:
            Number of deleted jobs.
        """
        if days_to_keep is None:
            days_to_keep = get_settings().completed_job_retention_days

        cutoff = self._clock() - timedelta(days=days_to_keep)
        async with session_scope(self._session_factory) as session:
            deleted = await JobRepository(session).delete_finished_before(cutoff)

        logger.info(f"Deleted {deleted} finished jobs", extra={"cutoff": cutoff.isoformat()})
        return deleted

    async def break_long_running_task(
        self,
        original_job_id: UUID,
        chunks: Sequence[EnqueueSpec],
    ) -> list[UUID]:
        """
        Split work into follow-up jobs owned by the original job's user.

        Args:
            original_job_id: The job being split.
            chunks: Follow-up jobs; their user_id is replaced.

        Returns:
            The new job ids.

        Raises:
            NotFoundError: If the original job does not exist.
        """
        original = await self.get_job(original_job_id)
        if original is None:
            raise NotFoundError("Job", original_job_id)

        follow_ups = [
            chunk.model_copy(update={"user_id": original.user_id}) for chunk in chunks
        ]
        return await self.batch_enqueue(follow_ups)
