"""
Unit tests for the processing tick.
"""

import structlog
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from taskqueue.constants import JobStatus, JobType
from taskqueue.services import QueueServices
from taskqueue.worker.collaborators import Collaborators
from taskqueue.worker.tick import ProcessingTick


def brand_collaborators(monotonic=None, seconds_per_job: float = 0) -> Collaborators:
    """Collaborators whose brand discovery optionally burns fake time."""

    async def discover(user_id, payload):
        if monotonic is not None:
            monotonic.advance(seconds_per_job)
        return {"brands_discovered": 1, "user_id": user_id}

    return Collaborators(discover_brands=discover)


async def enqueue_brand_jobs(services: QueueServices, count: int) -> list:
    return [
        await services.job_queue.enqueue(JobType.BRAND_DISCOVERY, user_id=f"u{i}")
        for i in range(count)
    ]


class TestProcessingTick:
    """Tests for ProcessingTick."""

    async def test_empty_queue(self, services: QueueServices, monotonic):
        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.jobs_processed == 0
        assert result.aborted is False
        assert result.queue_status.pending == 0
        assert result.queue_status.processing == 0

    async def test_completes_jobs(self, services: QueueServices, monotonic):
        services.collaborators = brand_collaborators()
        job_ids = await enqueue_brand_jobs(services, 2)

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.jobs_processed == 2
        assert result.jobs_completed == 2
        assert result.jobs_failed == 0
        for i, job_id in enumerate(job_ids):
            job = await services.job_queue.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert job.result == {"brands_discovered": 1, "user_id": f"u{i}"}

    async def test_unknown_type_is_failed(self, services: QueueServices, monotonic):
        job_id = await services.job_queue.enqueue("no_such_type")

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.jobs_processed == 1
        assert result.jobs_failed == 1
        job = await services.job_queue.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.last_error == "Unknown job type: no_such_type"

    async def test_processor_error_is_failed(self, services: QueueServices, monotonic):
        job_id = await services.job_queue.enqueue(JobType.TREND_COLLECTION, {})

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.jobs_failed == 1
        job = await services.job_queue.get_job(job_id)
        assert job.attempts == 1
        assert job.last_error == "Niche required for trend collection"

    async def test_unexpected_exception_is_failed(self, services: QueueServices, monotonic):
        async def discover(user_id, payload):
            raise KeyError("brand")

        services.collaborators = Collaborators(discover_brands=discover)
        job_id = await services.job_queue.enqueue(JobType.BRAND_DISCOVERY, user_id="u1")

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.jobs_failed == 1
        assert (await services.job_queue.get_job(job_id)).last_error == "'brand'"

    async def test_max_jobs_budget(self, services: QueueServices, monotonic):
        services.collaborators = brand_collaborators()
        await enqueue_brand_jobs(services, 5)

        result = await ProcessingTick(services, max_jobs=3, monotonic=monotonic).run()

        assert result.jobs_processed == 3
        assert result.queue_status.pending == 2
        assert result.queue_status.processing == 0

    async def test_zero_max_jobs_claims_nothing(self, services: QueueServices, monotonic):
        services.collaborators = brand_collaborators()
        await enqueue_brand_jobs(services, 1)

        result = await ProcessingTick(services, max_jobs=0, monotonic=monotonic).run()

        assert result.jobs_processed == 0
        assert result.queue_status.pending == 1

    async def test_duration_budget(self, services: QueueServices, monotonic):
        services.collaborators = brand_collaborators(monotonic, seconds_per_job=6)
        await enqueue_brand_jobs(services, 3)

        result = await ProcessingTick(
            services,
            max_duration_seconds=10,
            monotonic=monotonic,
        ).run()

        assert result.jobs_processed == 2
        assert result.queue_status.pending == 1
        assert result.execution_time_ms == 12000.0

    async def test_budget_spent_during_claim_releases_job(
        self,
        services: QueueServices,
        monotonic,
        monkeypatch,
    ):
        services.collaborators = brand_collaborators()
        [job_id] = await enqueue_brand_jobs(services, 1)
        claim = services.job_queue.get_next_job

        async def slow_claim():
            job = await claim()
            monotonic.advance(30)
            return job

        monkeypatch.setattr(services.job_queue, "get_next_job", slow_claim)

        result = await ProcessingTick(
            services,
            max_duration_seconds=10,
            monotonic=monotonic,
        ).run()

        assert result.jobs_processed == 0
        job = await services.job_queue.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0

    async def test_store_error_aborts(self, services: QueueServices, monotonic, monkeypatch):
        async def broken_claim():
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(services.job_queue, "get_next_job", broken_claim)

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.aborted is True
        assert "database is locked" in result.error
        assert result.queue_status is None

    async def test_sweeps_expired_cache(self, services: QueueServices, monotonic, clock):
        await services.cache.set("custom", "stale", 1, ttl=10)
        await services.cache.set("custom", "fresh", 2, ttl=1000)
        clock.advance(11)

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.cache_entries_cleaned == 1
        assert (await services.cache.get_stats()).total_entries == 1

    async def test_store_connection_refused_aborts(
        self,
        services: QueueServices,
        monotonic,
        monkeypatch,
    ):
        async def refused_claim():
            raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr(services.job_queue, "get_next_job", refused_claim)

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.aborted is True
        assert result.error == "connection refused"
        assert result.queue_status is None
        assert "tick_id" not in structlog.contextvars.get_contextvars()

    async def test_result_is_stored_as_json(self, services: QueueServices, monotonic):
        registry = services.registry.copy()

        @registry.register(JobType.CONTENT_GENERATION)
        async def returns_object(ctx):
            return {"plan": object()}

        @registry.register(JobType.PERFORMANCE_COLLECTION)
        async def returns_datetime(ctx):
            return {"at": ctx.now}

        services.registry = registry
        bad_id = await services.job_queue.enqueue(JobType.CONTENT_GENERATION, priority=9)
        good_id = await services.job_queue.enqueue(JobType.PERFORMANCE_COLLECTION, priority=1)

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.aborted is False
        assert (result.jobs_processed, result.jobs_completed, result.jobs_failed) == (2, 1, 1)

        bad = await services.job_queue.get_job(bad_id)
        assert bad.status == JobStatus.PENDING
        assert bad.attempts == 1
        assert "serialize" in bad.last_error

        good = await services.job_queue.get_job(good_id)
        assert good.status == JobStatus.COMPLETED
        assert good.result == {"at": "2024-01-15T12:00:00"}

    async def test_completion_after_lease_loss_is_counted_lost(
        self,
        services: QueueServices,
        monotonic,
        monkeypatch,
    ):
        services.collaborators = brand_collaborators()
        await enqueue_brand_jobs(services, 1)

        async def lease_gone(job_id, result=None):
            return False

        monkeypatch.setattr(services.job_queue, "complete_job", lease_gone)

        result = await ProcessingTick(services, monotonic=monotonic).run()

        assert result.jobs_processed == 1
        assert result.jobs_lost == 1
        assert result.jobs_completed == 0
        assert result.jobs_failed == 0

    async def test_publishes_queue_depth(self, services: QueueServices, monotonic):
        services.collaborators = brand_collaborators()
        await enqueue_brand_jobs(services, 5)

        await ProcessingTick(services, max_jobs=3, monotonic=monotonic).run()

        assert REGISTRY.get_sample_value("job_queue_depth", {"status": "pending"}) == 2.0
        assert REGISTRY.get_sample_value("job_queue_depth", {"status": "completed"}) == 3.0
