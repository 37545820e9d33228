"""
Queue module.
Contains the job queue, dead letter queue and cache orchestrators.
"""

from taskqueue.queue.cache_service import CacheService, cache_key, hash_key
from taskqueue.queue.dead_letter_queue import DeadLetterQueue
from taskqueue.queue.job_queue import JobQueue

__all__ = [
    "JobQueue",
    "DeadLetterQueue",
    "CacheService",
    "cache_key",
    "hash_key",
]
