"""
Unit tests for the job queue.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskqueue.constants import LEASE_EXPIRED_ERROR, DeadLetterStatus, JobStatus, JobType
from taskqueue.db.models import DeadLetter, Job
from taskqueue.errors import NotFoundError
from taskqueue.queue import JobQueue
from taskqueue.types.job import EnqueueSpec


class TestEnqueue:
    """Tests for adding jobs."""

    async def test_enqueue_defaults(self, job_queue: JobQueue, clock):
        job_id = await job_queue.enqueue(JobType.TREND_COLLECTION, {"niche": "fitness"})

        job = await job_queue.get_job(job_id)
        assert job is not None
        assert job.status == JobStatus.PENDING
        assert job.type == "trend_collection"
        assert job.payload == {"niche": "fitness"}
        assert job.priority == 5
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.scheduled_for == clock.now
        assert job.error_history == []

    async def test_enqueue_normalizes_aware_schedule(self, job_queue: JobQueue):
        aware = datetime(2024, 1, 16, 14, 0, tzinfo=timezone(timedelta(hours=2)))

        job_id = await job_queue.enqueue("instagram_sync", user_id="u1", scheduled_for=aware)

        job = await job_queue.get_job(job_id)
        assert job.scheduled_for == datetime(2024, 1, 16, 12, 0)

    async def test_enqueue_accepts_unknown_type(self, job_queue: JobQueue):
        job_id = await job_queue.enqueue("no_such_type")

        job = await job_queue.get_job(job_id)
        assert job.type == "no_such_type"
        assert job.status == JobStatus.PENDING

    async def test_batch_enqueue_returns_ids_in_order(self, job_queue: JobQueue):
        specs = [
            EnqueueSpec(type="trend_collection", payload={"niche": niche}, priority=p)
            for niche, p in [("fitness", 3), ("food", 7), ("tech", 5)]
        ]

        job_ids = await job_queue.batch_enqueue(specs)

        assert len(job_ids) == 3
        jobs = [await job_queue.get_job(job_id) for job_id in job_ids]
        assert [job.payload["niche"] for job in jobs] == ["fitness", "food", "tech"]
        assert [job.priority for job in jobs] == [3, 7, 5]
        assert all(job.status == JobStatus.PENDING for job in jobs)

    async def test_batch_enqueue_empty(self, job_queue: JobQueue):
        assert await job_queue.batch_enqueue([]) == []


class TestClaim:
    """Tests for get_next_job ordering and exclusivity."""

    async def test_empty_queue(self, job_queue: JobQueue):
        assert await job_queue.get_next_job() is None

    async def test_claim_marks_processing(self, job_queue: JobQueue, clock):
        job_id = await job_queue.enqueue("algorithm_detection")

        job = await job_queue.get_next_job()

        assert job.id == job_id
        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 1
        assert job.started_at == clock.now
        assert job.lease_expires_at == clock.now + timedelta(seconds=300)

    async def test_priority_then_schedule_order(self, job_queue: JobQueue, clock):
        low = await job_queue.enqueue("algorithm_detection", priority=1)
        clock.advance(1)
        high_late = await job_queue.enqueue("algorithm_detection", priority=9)
        high_early = await job_queue.enqueue(
            "algorithm_detection",
            priority=9,
            scheduled_for=clock.now - timedelta(minutes=5),
        )

        order = [(await job_queue.get_next_job()).id for _ in range(3)]

        assert order == [high_early, high_late, low]

    async def test_future_job_not_claimable(self, job_queue: JobQueue, clock):
        job_id = await job_queue.enqueue(
            "algorithm_detection",
            scheduled_for=clock.now + timedelta(hours=1),
        )

        assert await job_queue.get_next_job() is None

        clock.advance(hours=1)
        job = await job_queue.get_next_job()
        assert job.id == job_id

    async def test_concurrent_claims_are_exclusive(self, job_queue: JobQueue):
        job_ids = {await job_queue.enqueue("algorithm_detection") for _ in range(3)}

        claimed = await asyncio.gather(*(job_queue.get_next_job() for _ in range(5)))

        claimed_ids = [job.id for job in claimed if job is not None]
        assert len(claimed_ids) == 3
        assert set(claimed_ids) == job_ids


class TestCompleteAndFail:
    """Tests for outcome recording."""

    async def test_complete_job(self, job_queue: JobQueue, clock):
        await job_queue.enqueue("algorithm_detection")
        job = await job_queue.get_next_job()

        assert await job_queue.complete_job(job.id, {"changes": []}) is True

        done = await job_queue.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.result == {"changes": []}
        assert done.completed_at == clock.now
        assert done.lease_expires_at is None

    async def test_complete_requires_processing(self, job_queue: JobQueue):
        job_id = await job_queue.enqueue("algorithm_detection")

        assert await job_queue.complete_job(job_id, {"x": 1}) is False
        assert (await job_queue.get_job(job_id)).status == JobStatus.PENDING

    async def test_fail_reschedules_with_backoff(self, job_queue: JobQueue, clock):
        await job_queue.enqueue("algorithm_detection")
        job = await job_queue.get_next_job()

        assert await job_queue.fail_job(job.id, "upstream timeout") is True

        failed = await job_queue.get_job(job.id)
        assert failed.status == JobStatus.PENDING
        assert failed.attempts == 1
        assert failed.last_error == "upstream timeout"
        # base 60s * 2^1
        assert failed.scheduled_for == clock.now + timedelta(seconds=120)
        assert failed.error_history == [
            {"error": "upstream timeout", "attempt": 1, "at": clock.now.isoformat()}
        ]

    async def test_retry_then_dead_letter(
        self,
        job_queue: JobQueue,
        clock,
        db_session: AsyncSession,
    ):
        job_id = await job_queue.enqueue("trend_collection", {"niche": "food"}, user_id="u1")

        for attempt in range(1, 4):
            job = await job_queue.get_next_job()
            assert job.id == job_id
            assert job.attempts == attempt
            await job_queue.fail_job(job.id, f"boom {attempt}")
            clock.advance(hours=2)

        final = await job_queue.get_job(job_id)
        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert await job_queue.get_next_job() is None

        entries = (await db_session.execute(select(DeadLetter))).scalars().all()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.original_job_id == job_id
        assert entry.status == DeadLetterStatus.DEAD
        assert entry.final_error == "boom 3"
        assert entry.user_id == "u1"
        assert entry.payload == {"niche": "food"}
        assert [h["error"] for h in entry.failure_history] == ["boom 1", "boom 2", "boom 3"]

    async def test_fail_requires_processing(self, job_queue: JobQueue):
        job_id = await job_queue.enqueue("algorithm_detection")

        assert await job_queue.fail_job(job_id, "nope") is False
        assert await job_queue.fail_job(uuid4(), "nope") is False

    async def test_backoff_is_capped(self, job_queue: JobQueue):
        assert job_queue.backoff_delay(1) == timedelta(seconds=120)
        assert job_queue.backoff_delay(20) == timedelta(seconds=3600)

    async def test_explicit_zero_settings_are_kept(self, session_factory, clock):
        job_queue = JobQueue(
            session_factory,
            clock=clock,
            default_priority=0,
            backoff_base_seconds=0,
        )

        job_id = await job_queue.enqueue(JobType.BRAND_DISCOVERY)

        assert (await job_queue.get_job(job_id)).priority == 0
        assert job_queue.backoff_delay(1) == timedelta(0)


class TestLeases:
    """Tests for release and abandoned-lease reclaim."""

    async def test_release_returns_attempt(self, job_queue: JobQueue):
        await job_queue.enqueue("algorithm_detection")
        job = await job_queue.get_next_job()

        assert await job_queue.release_job(job.id) is True

        released = await job_queue.get_job(job.id)
        assert released.status == JobStatus.PENDING
        assert released.attempts == 0
        assert released.lease_expires_at is None

    async def test_expired_lease_is_reclaimed(self, job_queue: JobQueue, clock):
        job_id = await job_queue.enqueue("algorithm_detection")
        await job_queue.get_next_job()

        clock.advance(seconds=299)
        assert await job_queue.reclaim_abandoned() == 0

        clock.advance(seconds=2)
        assert await job_queue.reclaim_abandoned() == 1

        job = await job_queue.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.last_error.startswith(LEASE_EXPIRED_ERROR)

    async def test_abandoned_job_eventually_dead_letters(
        self,
        job_queue: JobQueue,
        clock,
        db_session: AsyncSession,
    ):
        job_id = await job_queue.enqueue("algorithm_detection", max_attempts=1)
        await job_queue.get_next_job()

        clock.advance(minutes=10)
        assert await job_queue.get_next_job() is None

        assert (await job_queue.get_job(job_id)).status == JobStatus.FAILED
        entry = (await db_session.execute(select(DeadLetter))).scalar_one()
        assert entry.original_job_id == job_id

    async def test_late_completion_after_reclaim_is_rejected(self, job_queue: JobQueue, clock):
        await job_queue.enqueue("algorithm_detection")
        job = await job_queue.get_next_job()

        clock.advance(minutes=10)
        await job_queue.reclaim_abandoned()

        assert await job_queue.complete_job(job.id, {"late": True}) is False


class TestQueries:
    """Tests for read helpers and maintenance."""

    async def test_user_jobs_newest_first(self, job_queue: JobQueue, clock):
        first = await job_queue.enqueue("instagram_sync", user_id="u1")
        clock.advance(1)
        second = await job_queue.enqueue("brand_discovery", user_id="u1")
        await job_queue.enqueue("brand_discovery", user_id="u2")

        jobs = await job_queue.get_user_jobs("u1")

        assert [job.id for job in jobs] == [second, first]
        assert len(await job_queue.get_user_jobs("u1", limit=1)) == 1

    async def test_counts(self, job_queue: JobQueue, clock):
        await job_queue.enqueue("algorithm_detection")
        await job_queue.enqueue("algorithm_detection")
        await job_queue.enqueue("algorithm_detection", scheduled_for=clock.now + timedelta(days=1))
        await job_queue.get_next_job()

        assert await job_queue.get_pending_jobs_count() == 1
        assert await job_queue.get_processing_jobs_count() == 1

        stats = await job_queue.refresh_depth_metrics()
        assert stats == {"pending": 2, "processing": 1}

    async def test_cleanup_old_jobs(self, job_queue: JobQueue, clock):
        old_id = await job_queue.enqueue("algorithm_detection", priority=9)
        await job_queue.get_next_job()
        await job_queue.complete_job(old_id, {})
        pending_id = await job_queue.enqueue("algorithm_detection")

        clock.advance(days=8)
        recent_id = await job_queue.enqueue("algorithm_detection", priority=10)
        await job_queue.get_next_job()
        await job_queue.complete_job(recent_id, {})

        assert await job_queue.cleanup_old_jobs(days_to_keep=7) == 1
        assert await job_queue.get_job(old_id) is None
        assert await job_queue.get_job(pending_id) is not None
        assert await job_queue.get_job(recent_id) is not None

    async def test_break_long_running_task(self, job_queue: JobQueue):
        original = await job_queue.enqueue("trend_collection", {"niche": "all"}, user_id="u7")

        chunk_ids = await job_queue.break_long_running_task(
            original,
            [
                EnqueueSpec(type="trend_collection", payload={"niche": n}, user_id="other")
                for n in ("fitness", "food")
            ],
        )

        chunks = [await job_queue.get_job(job_id) for job_id in chunk_ids]
        assert [c.payload["niche"] for c in chunks] == ["fitness", "food"]
        assert all(c.user_id == "u7" for c in chunks)

    async def test_break_long_running_task_missing_job(self, job_queue: JobQueue):
        with pytest.raises(NotFoundError):
            await job_queue.break_long_running_task(uuid4(), [])


async def test_job_rows_are_plain_orm_objects(job_queue: JobQueue):
    job_id = await job_queue.enqueue("algorithm_detection")
    job = await job_queue.get_job(job_id)

    assert isinstance(job, Job)
    assert job.is_retryable
