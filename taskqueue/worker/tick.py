"""
Processing tick.

A tick is one short, externally triggered run: it sweeps expired cache
entries, then claims and executes jobs one at a time until it runs out of
jobs, out of its job budget, or out of wall-clock time.
"""

import logging
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from pydantic import TypeAdapter
from sqlalchemy.exc import SQLAlchemyError

from taskqueue.config import get_settings
from taskqueue.constants import SPAN_CLAIM_JOB, SPAN_EXECUTE_JOB, SPAN_TICK
from taskqueue.db.models import Job
from taskqueue.observability.logging import bind_context, clear_context
from taskqueue.observability.metrics import get_metrics
from taskqueue.observability.tracing import get_tracer
from taskqueue.services import QueueServices
from taskqueue.types.job import JobContext, QueueStatus, TickResult

logger = logging.getLogger(__name__)

# Connect-time failures surface as OSError, not as a SQLAlchemy error
STORE_ERRORS = (SQLAlchemyError, OSError)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_LOST = "lost"

_json_result = TypeAdapter(Any)


class ProcessingTick:
    """
    One bounded pass over the queue.

    Every claim counts toward max_jobs, whatever its outcome. A store error
    ends the tick early with aborted=True; jobs already finished stay
    finished, and a job left processing is reclaimed once its lease runs
    out.
    """

    def __init__(
        self,
        services: QueueServices,
        *,
        max_jobs: int | None = None,
        max_duration_seconds: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the tick.

        Args:
            services: Shared orchestrators and processors.
            max_jobs: Maximum claims in this tick.
            max_duration_seconds: Wall-clock budget.
            monotonic: Monotonic time source, in seconds.
        """
        settings = get_settings()

        self.services = services
        self.max_jobs = settings.tick_max_jobs if max_jobs is None else max_jobs
        self.max_duration_seconds = (
            settings.tick_max_duration_seconds
            if max_duration_seconds is None
            else max_duration_seconds
        )
        self._monotonic = monotonic
        self._metrics = get_metrics()

    async def run(self) -> TickResult:
        """
        Run the tick.

        Returns:
            TickResult with counts, timing and the queue status afterwards.
        """
        result = TickResult()
        start = self._monotonic()
        tick_id = uuid4().hex[:12]
        bind_context(tick_id=tick_id)

        try:
            with get_tracer().start_as_current_span(SPAN_TICK) as span:
                span.set_attribute("tick_id", tick_id)
                result.cache_entries_cleaned = await self._cleanup_cache()

                try:
                    await self._process_jobs(result, start)
                    result.queue_status = await self._queue_status()
                except STORE_ERRORS as e:
                    logger.exception("Tick aborted on store error")
                    result.aborted = True
                    result.error = str(e) or type(e).__name__

                span.set_attribute("jobs_processed", result.jobs_processed)
                span.set_attribute("aborted", result.aborted)

            logger.info(
                "Tick finished",
                extra={
                    "jobs_processed": result.jobs_processed,
                    "jobs_completed": result.jobs_completed,
                    "jobs_failed": result.jobs_failed,
                    "jobs_lost": result.jobs_lost,
                    "aborted": result.aborted,
                },
            )
        finally:
            elapsed = self._monotonic() - start
            result.execution_time_ms = round(elapsed * 1000, 2)
            self._metrics.record_tick(elapsed)
            clear_context()

        return result

    async def _cleanup_cache(self) -> int:
        try:
            return await self.services.cache.cleanup_expired()
        except STORE_ERRORS:
            logger.exception("Cache cleanup failed; continuing with jobs")
            return 0

    async def _queue_status(self) -> QueueStatus:
        queue = self.services.job_queue
        status = QueueStatus(
            pending=await queue.get_pending_jobs_count(),
            processing=await queue.get_processing_jobs_count(),
        )
        await queue.refresh_depth_metrics()
        return status

    def _elapsed(self, start: float) -> float:
        return self._monotonic() - start

    async def _process_jobs(self, result: TickResult, start: float) -> None:
        queue = self.services.job_queue

        while (
            result.jobs_processed < self.max_jobs
            and self._elapsed(start) < self.max_duration_seconds
        ):
            with get_tracer().start_as_current_span(SPAN_CLAIM_JOB):
                job = await queue.get_next_job()

            if job is None:
                logger.debug("No eligible jobs in queue")
                break

            if self._elapsed(start) >= self.max_duration_seconds:
                await queue.release_job(job.id)
                break

            outcome = await self._execute(job)
            result.jobs_processed += 1
            if outcome == OUTCOME_COMPLETED:
                result.jobs_completed += 1
            elif outcome == OUTCOME_LOST:
                result.jobs_lost += 1
            else:
                result.jobs_failed += 1

    async def _execute(self, job: Job) -> str:
        """
        Run one claimed job and record its outcome.

        The processor output is converted to JSON-ready data inside the
        processor guard, so an output the store cannot hold fails the job
        instead of aborting the tick.

        Returns:
            OUTCOME_COMPLETED, OUTCOME_FAILED, or OUTCOME_LOST when the job
            was no longer processing by the time it finished.
        """
        queue = self.services.job_queue
        processor = self.services.registry.get(job.type)

        if processor is None:
            await queue.fail_job(job.id, f"Unknown job type: {job.type}")
            return OUTCOME_FAILED

        context = JobContext(
            job_id=job.id,
            job_type=job.type,
            user_id=job.user_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            payload=job.payload,
            cache=self.services.cache,
            collaborators=self.services.collaborators,
            now=self.services.clock(),
        )

        logger.info(
            "Executing job",
            extra={"job_id": str(job.id), "job_type": job.type, "attempt": job.attempts},
        )

        started = time.perf_counter()
        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", str(job.id))
            span.set_attribute("job_type", job.type)
            span.set_attribute("attempt", job.attempts)

            try:
                output = _json_result.dump_python(await processor(context), mode="json")
            except Exception as e:
                duration = time.perf_counter() - started
                logger.warning(
                    "Job attempt failed",
                    extra={"job_id": str(job.id), "error": str(e), "attempt": job.attempts},
                )
                span.record_exception(e)
                await queue.fail_job(job.id, str(e) or type(e).__name__)
                self._metrics.record_job_duration(job.type, "error", duration)
                return OUTCOME_FAILED

        duration = time.perf_counter() - started
        if not await queue.complete_job(job.id, output):
            self._metrics.record_job_finished(job.type, OUTCOME_LOST)
            return OUTCOME_LOST

        self._metrics.record_job_finished(job.type, OUTCOME_COMPLETED)
        self._metrics.record_job_duration(job.type, OUTCOME_COMPLETED, duration)
        return OUTCOME_COMPLETED
