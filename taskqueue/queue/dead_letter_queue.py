"""
Dead letter queue orchestrator.

Operators inspect jobs that exhausted their attempts, re-enqueue them as
new jobs, or mark them resolved.
"""

import logging
from collections.abc import Sequence
from datetime import timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskqueue.clock import Clock, utcnow
from taskqueue.config import get_settings
from taskqueue.constants import DeadLetterStatus
from taskqueue.db.connection import session_scope
from taskqueue.db.models import DeadLetter
from taskqueue.db.repository import DeadLetterRepository, JobRepository
from taskqueue.errors import InvalidStateError, NotFoundError, TaskQueueError
from taskqueue.types.job import DeadLetterStats

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """Operator-facing view over dead-lettered jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_priority: int | None = None,
        clock: Clock = utcnow,
    ):
        """
        Initialize the dead letter queue.

        Args:
            session_factory: Factory for database sessions.
            retry_priority: Priority given to re-enqueued jobs.
            clock: Source of the current (naive UTC) time.
        """
        self._session_factory = session_factory
        self.retry_priority = (
            get_settings().dlq_retry_priority if retry_priority is None else retry_priority
        )
        self._clock = clock

    async def list_entries(
        self,
        status: DeadLetterStatus | None = None,
        job_type: str | None = None,
        user_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetter]:
        """List entries with optional filters, newest first."""
        async with session_scope(self._session_factory) as session:
            entries = await DeadLetterRepository(session).list_entries(
                status=status,
                job_type=job_type,
                user_id=user_id,
                limit=limit,
                offset=offset,
            )
            return list(entries)

    async def get(self, dlq_id: UUID) -> DeadLetter | None:
        async with session_scope(self._session_factory) as session:
            return await DeadLetterRepository(session).get(dlq_id)

    async def get_stats(self) -> DeadLetterStats:
        """
        Aggregate counts.

        by_type only counts entries still in the dead state, i.e. the ones
        waiting on an operator.
        """
        async with session_scope(self._session_factory) as session:
            repo = DeadLetterRepository(session)
            by_status = await repo.count_by_status()
            by_type = await repo.count_by_type(DeadLetterStatus.DEAD)

        return DeadLetterStats(
            total=sum(by_status.values()),
            by_status=by_status,
            by_type=by_type,
        )

    async def retry(self, dlq_id: UUID) -> UUID:
        """
        Re-enqueue a dead job as a brand new job.

        The new job starts with zero attempts at the elevated retry priority.
        The entry moves to retrying and records the new job id; creating the
        job and updating the entry commit together.

        Args:
            dlq_id: The dead letter id.

        Returns:
            The new job id.

        Raises:
            NotFoundError: If the entry does not exist or is resolved.
            InvalidStateError: If the entry was already retried.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            repo = DeadLetterRepository(session)
            entry = await repo.get(dlq_id)
            self._check_retryable(dlq_id, entry)

            new_job = await JobRepository(session).create_job(
                job_type=entry.job_type,
                payload=entry.payload,
                now=now,
                user_id=entry.user_id,
                priority=self.retry_priority,
                max_attempts=entry.max_attempts,
            )

            if not await repo.mark_retrying(dlq_id, new_job.id):
                # Lost a race with another operator; the rollback drops new_job
                entry = await repo.get(dlq_id)
                self._check_retryable(dlq_id, entry)
                raise InvalidStateError("DeadLetter", dlq_id, entry.status)

            new_job_id = new_job.id

        logger.info(
            "Dead letter retried",
            extra={"dead_letter_id": str(dlq_id), "job_id": str(new_job_id)},
        )
        return new_job_id

    @staticmethod
    def _check_retryable(dlq_id: UUID, entry: DeadLetter | None) -> None:
        if entry is None or entry.status == DeadLetterStatus.RESOLVED.value:
            raise NotFoundError("DeadLetter", dlq_id)
        if entry.status != DeadLetterStatus.DEAD.value:
            raise InvalidStateError("DeadLetter", dlq_id, entry.status)

    async def bulk_retry(
        self,
        job_type: str | None = None,
        ids: Sequence[UUID] | None = None,
    ) -> int:
        """
        Retry every dead entry of a job type, or an explicit list of ids.

        Entries that cannot be retried are logged and skipped.

        Returns:
            Number of entries retried.
        """
        if ids is None:
            if job_type is None:
                raise ValueError("bulk_retry needs a job_type or ids")
            async with session_scope(self._session_factory) as session:
                ids = await DeadLetterRepository(session).list_ids(
                    DeadLetterStatus.DEAD, job_type
                )

        retried = 0
        for dlq_id in ids:
            try:
                await self.retry(dlq_id)
            except TaskQueueError as e:
                logger.warning(
                    "Skipping dead letter in bulk retry",
                    extra={"dead_letter_id": str(dlq_id), "reason": str(e)},
                )
                continue
            retried += 1

        logger.info(
            f"Bulk retried {retried} of {len(ids)} dead letters",
            extra={"job_type": job_type},
        )
        return retried

    async def resolve(
        self,
        dlq_id: UUID,
        notes: str,
        resolved_by: str | None = None,
    ) -> None:
        """
        Close an entry without retrying it.

        Raises:
            NotFoundError: If the entry does not exist.
            InvalidStateError: If the entry is already resolved.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            repo = DeadLetterRepository(session)
            if not await repo.resolve(dlq_id, notes, resolved_by, now):
                entry = await repo.get(dlq_id)
                if entry is None:
                    raise NotFoundError("DeadLetter", dlq_id)
                raise InvalidStateError("DeadLetter", dlq_id, entry.status)

        logger.info(
            "Dead letter resolved",
            extra={"dead_letter_id": str(dlq_id), "resolved_by": resolved_by},
        )

    async def purge_resolved(self, older_than_days: int = 30) -> int:
        """
        Delete resolved entries resolved more than older_than_days ago.

        Returns:
            Number of deleted entries.
        """
        cutoff = self._clock() - timedelta(days=older_than_days)
        async with session_scope(self._session_factory) as session:
            deleted = await DeadLetterRepository(session).delete_resolved_before(cutoff)

        logger.info(f"Purged {deleted} resolved dead letters")
        return deleted
