"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed by a tick)
    - PROCESSING -> COMPLETED (processor returned a result)
    - PROCESSING -> PENDING (retryable failure, rescheduled with backoff)
    - PROCESSING -> PENDING (lease expired or released, reclaimed)
    - PROCESSING -> FAILED (attempts exhausted, dead letter created)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeadLetterStatus(StrEnum):
    """
    Dead letter lifecycle states.

    - DEAD -> RETRYING (operator requeued it as a new job)
    - DEAD -> RESOLVED, RETRYING -> RESOLVED (operator closed it)
    """

    DEAD = "dead"
    RETRYING = "retrying"
    RESOLVED = "resolved"


class JobType(StrEnum):
    """Job types understood by the processing tick."""

    ALGORITHM_DETECTION = "algorithm_detection"
    PERFORMANCE_COLLECTION = "performance_collection"
    TREND_COLLECTION = "trend_collection"
    CONTENT_GENERATION = "content_generation"
    INSTAGRAM_SYNC = "instagram_sync"
    BRAND_DISCOVERY = "brand_discovery"


class CacheNamespace(StrEnum):
    """Cache namespaces for memoized processor output."""

    INSTAGRAM_MEDIA = "instagram_media"
    INSTAGRAM_INSIGHTS = "instagram_insights"
    INSTAGRAM_PROFILE = "instagram_profile"
    OPENAI_RESPONSE = "openai_response"
    TREND_DATA = "trend_data"
    BRAND_MATCHING = "brand_matching"
    ALGORITHM_DETECTION = "algorithm_detection"
    CONTENT_PLAN = "content_plan"


# Default TTLs in seconds per namespace
DEFAULT_CACHE_TTLS: dict[str, int] = {
    CacheNamespace.INSTAGRAM_MEDIA: 3600,
    CacheNamespace.INSTAGRAM_INSIGHTS: 3600,
    CacheNamespace.INSTAGRAM_PROFILE: 1800,
    CacheNamespace.OPENAI_RESPONSE: 86400,
    CacheNamespace.TREND_DATA: 21600,
    CacheNamespace.BRAND_MATCHING: 2592000,
    CacheNamespace.ALGORITHM_DETECTION: 3600,
    CacheNamespace.CONTENT_PLAN: 604800,
}

# Default values
DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_DURATION_SECONDS = 300
LEASE_EXPIRED_ERROR = "lease expired (abandoned by a previous tick)"

# API constants
API_V1_PREFIX = "/v1"
ADMIN_ROLE = "admin"
USER_ROLE = "user"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_DEAD_LETTERS = "dead_letters_created_total"
METRIC_LEASES_RECLAIMED = "leases_reclaimed_total"
METRIC_TICK_DURATION = "tick_duration_seconds"
METRIC_CACHE_LOOKUPS = "cache_lookups_total"
METRIC_API_REQUESTS = "api_requests_total"

# Trace span names
SPAN_TICK = "processing_tick"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
