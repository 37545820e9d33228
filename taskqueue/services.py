"""
Service container.

Bundles the orchestrators that a tick and the HTTP API share, all bound to
the same session factory.
"""

from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskqueue.clock import Clock, utcnow
from taskqueue.queue import CacheService, DeadLetterQueue, JobQueue
from taskqueue.worker.collaborators import Collaborators
from taskqueue.worker.processors import ProcessorRegistry, build_default_registry


@dataclass
class QueueServices:
    """Orchestrators plus the processor wiring."""

    session_factory: async_sessionmaker[AsyncSession]
    job_queue: JobQueue
    dead_letter_queue: DeadLetterQueue
    cache: CacheService
    registry: ProcessorRegistry
    collaborators: Collaborators = field(default_factory=Collaborators)
    clock: Clock = utcnow


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    collaborators: Collaborators | None = None,
    registry: ProcessorRegistry | None = None,
    clock: Clock = utcnow,
) -> QueueServices:
    """
    Build the service container with settings-derived defaults.

    Args:
        session_factory: Factory for database sessions.
        collaborators: External callables for processors.
        registry: Processor registry; defaults to the built-in processors.
        clock: Source of the current (naive UTC) time.
    """
    return QueueServices(
        session_factory=session_factory,
        job_queue=JobQueue(session_factory, clock=clock),
        dead_letter_queue=DeadLetterQueue(session_factory, clock=clock),
        cache=CacheService(session_factory, clock=clock),
        registry=registry or build_default_registry(),
        collaborators=collaborators or Collaborators(),
        clock=clock,
    )
