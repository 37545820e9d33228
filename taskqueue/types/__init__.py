"""
Type definitions for the task queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from taskqueue.types.api import (
    BulkRetryRequest,
    BulkRetryResponse,
    CacheCleanupResponse,
    DeadLetterListResponse,
    DeadLetterResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    HealthResponse,
    JobResponse,
    PurgeRequest,
    PurgeResponse,
    ResolveRequest,
    RetryResponse,
    UserJobsResponse,
    UserJobStats,
)
from taskqueue.types.job import (
    CacheStats,
    DeadLetterStats,
    EnqueueSpec,
    JobContext,
    QueueStatus,
    TickResult,
)

__all__ = [
    # API types
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "JobResponse",
    "UserJobsResponse",
    "UserJobStats",
    "DeadLetterResponse",
    "DeadLetterListResponse",
    "ResolveRequest",
    "BulkRetryRequest",
    "BulkRetryResponse",
    "RetryResponse",
    "PurgeRequest",
    "PurgeResponse",
    "CacheCleanupResponse",
    "HealthResponse",
    # Job types
    "EnqueueSpec",
    "JobContext",
    "QueueStatus",
    "TickResult",
    "DeadLetterStats",
    "CacheStats",
]
