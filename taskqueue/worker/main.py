"""
Command-line processing tick.

Runs a single tick against the configured database and exits, for use from
cron or any scheduler that can run a command. Exit status is 1 when the
tick aborted on a store error.
"""

import asyncio
import logging
import sys

from taskqueue.db import close_db, init_db
from taskqueue.observability.logging import setup_logging
from taskqueue.observability.metrics import setup_metrics
from taskqueue.observability.tracing import setup_tracing
from taskqueue.services import build_services
from taskqueue.types.job import TickResult
from taskqueue.worker.tick import ProcessingTick

logger = logging.getLogger(__name__)


async def run_async() -> TickResult:
    """Run one tick with freshly initialized resources."""
    setup_logging()
    setup_metrics()
    setup_tracing()

    session_factory = await init_db()
    try:
        services = build_services(session_factory)
        return await ProcessingTick(services).run()
    finally:
        await close_db()


def run() -> None:
    """Run one processing tick."""
    result = asyncio.run(run_async())
    print(result.model_dump_json(indent=2))
    if result.aborted:
        sys.exit(1)


if __name__ == "__main__":
    run()
