"""
Job processors registry and implementations.

Processors may run more than once for the same job (a retry after a failed
attempt, or a reclaim after a tick died mid-job), so each one either is
idempotent or memoizes its output in the cache.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from taskqueue.clock import date_bucket, week_start_bucket
from taskqueue.constants import CacheNamespace, JobType
from taskqueue.errors import ProcessorError
from taskqueue.queue.cache_service import cache_key
from taskqueue.types.job import JobContext
from taskqueue.worker.collaborators import InstagramGraphClient

logger = logging.getLogger(__name__)

# Type alias for processor functions
Processor = Callable[[JobContext], Awaitable[Any]]

NICHE_HASHTAGS: dict[str, list[str]] = {
    "fitness": ["fitness", "workout", "fitnessmotivation", "gym", "fitfam"],
    "beauty": ["beauty", "makeup", "skincare", "beautytips", "makeuptutorial"],
    "lifestyle": ["lifestyle", "lifestyleblogger", "dailylife", "livingmybestlife", "selfcare"],
    "fashion": ["fashion", "ootd", "fashionista", "style", "fashionblogger"],
    "food": ["foodie", "foodstagram", "foodporn", "recipe", "cooking"],
    "travel": ["travel", "wanderlust", "travelgram", "vacation", "explore"],
    "business": ["entrepreneur", "business", "startup", "businessowner", "success"],
    "parenting": ["parenting", "momlife", "parenthood", "kids", "family"],
    "tech": ["tech", "technology", "innovation", "coding", "ai"],
    "education": ["education", "learning", "study", "students", "teaching"],
}

TREND_HASHTAG_LIMIT = 5
TREND_POSTS_PER_HASHTAG = 200


class ProcessorRegistry:
    """Maps job types to processors."""

    def __init__(self) -> None:
        self._processors: dict[JobType, Processor] = {}

    def register(self, job_type: JobType) -> Callable[[Processor], Processor]:
        """
        Decorator to register a processor.

        Example:
            @registry.register(JobType.TREND_COLLECTION)
            async def process_trends(ctx: JobContext) -> dict:
                ...
        """

        def decorator(processor: Processor) -> Processor:
            self._processors[job_type] = processor
            logger.debug(f"Registered processor for job type: {job_type}")
            return processor

        return decorator

    def get(self, job_type: str) -> Processor | None:
        """
        Get the processor for a job type.

        Returns:
            The processor, or None for a string that is not a known job type.
        """
        try:
            return self._processors.get(JobType(job_type))
        except ValueError:
            return None

    def missing(self) -> list[JobType]:
        """Job types with no registered processor."""
        return [job_type for job_type in JobType if job_type not in self._processors]

    def copy(self) -> "ProcessorRegistry":
        registry = ProcessorRegistry()
        registry._processors = dict(self._processors)
        return registry

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._processors


_default_registry = ProcessorRegistry()


def get_niche_hashtags(niche: str) -> list[str]:
    """Hashtags to sample for a niche; unknown niches fall back to the niche itself."""
    return NICHE_HASHTAGS.get(niche.lower(), ["trending", niche])


def _require_user(ctx: JobContext, purpose: str) -> str:
    if not ctx.user_id:
        raise ProcessorError(f"User ID required for {purpose}")
    return ctx.user_id


# ============================================================================
# Built-in processors
# ============================================================================


@_default_registry.register(JobType.ALGORITHM_DETECTION)
async def process_algorithm_detection(ctx: JobContext) -> dict[str, Any]:
    """
    Detect platform algorithm changes.

    Insights are recorded only when detection actually runs, not on a
    cached replay.
    """
    detect_changes = ctx.collaborators.require("detect_changes")

    async def detect() -> list[dict[str, Any]]:
        changes = await detect_changes()
        if changes and ctx.collaborators.record_insights is not None:
            await ctx.collaborators.record_insights(changes)
        return changes

    changes = await ctx.cache.get_or_compute(
        CacheNamespace.ALGORITHM_DETECTION,
        cache_key("changes", date_bucket(ctx.now)),
        detect,
    )
    return {"changes": changes}


@_default_registry.register(JobType.PERFORMANCE_COLLECTION)
async def process_performance_collection(ctx: JobContext) -> dict[str, Any]:
    user_id = _require_user(ctx, "performance collection")
    collect_daily_summary = ctx.collaborators.require("collect_daily_summary")

    return await ctx.cache.get_or_compute(
        CacheNamespace.ALGORITHM_DETECTION,
        cache_key("performance", user_id, date_bucket(ctx.now)),
        lambda: collect_daily_summary(user_id),
        ttl=3600,
    )


@_default_registry.register(JobType.TREND_COLLECTION)
async def process_trend_collection(ctx: JobContext) -> dict[str, Any]:
    """Collect hashtag trends for payload["niche"]."""
    niche = ctx.payload.get("niche")
    if not niche:
        raise ProcessorError("Niche required for trend collection")

    collect_hashtag_trends = ctx.collaborators.require("collect_hashtag_trends")

    async def collect() -> list[dict[str, Any]]:
        hashtags = get_niche_hashtags(niche)[:TREND_HASHTAG_LIMIT]
        trends = await collect_hashtag_trends(hashtags, TREND_POSTS_PER_HASHTAG)
        if ctx.collaborators.save_trends is not None:
            await ctx.collaborators.save_trends(niche, trends)
        return trends

    trends = await ctx.cache.get_or_compute(
        CacheNamespace.TREND_DATA,
        cache_key("trends", niche, date_bucket(ctx.now)),
        collect,
        ttl=21600,
    )
    return {"trends": len(trends), "niche": niche}


@_default_registry.register(JobType.CONTENT_GENERATION)
async def process_content_generation(ctx: JobContext) -> dict[str, Any]:
    user_id = _require_user(ctx, "content generation")
    generate_weekly_plan = ctx.collaborators.require("generate_weekly_plan")

    return await ctx.cache.get_or_compute(
        CacheNamespace.CONTENT_PLAN,
        cache_key("plan", user_id, week_start_bucket(ctx.now)),
        lambda: generate_weekly_plan(user_id, ctx.payload),
    )


@_default_registry.register(JobType.INSTAGRAM_SYNC)
async def process_instagram_sync(ctx: JobContext) -> dict[str, Any]:
    """
    Refresh a user's Instagram profile and recent posts.

    Profile and media responses are cached separately so a retry after a
    storage failure does not hit the Graph API again.
    """
    user_id = _require_user(ctx, "Instagram sync")
    get_credentials = ctx.collaborators.require("instagram_credentials")
    store_instagram_sync = ctx.collaborators.require("store_instagram_sync")

    credentials = await get_credentials(user_id)
    if credentials is None:
        raise ProcessorError("No Instagram access token for user")

    client = ctx.collaborators.instagram_client or InstagramGraphClient()
    ig_user_id = credentials.instagram_user_id

    profile = await ctx.cache.get_or_compute(
        CacheNamespace.INSTAGRAM_PROFILE,
        cache_key("profile", ig_user_id),
        lambda: client.fetch_profile(credentials),
    )
    media = await ctx.cache.get_or_compute(
        CacheNamespace.INSTAGRAM_MEDIA,
        cache_key("media", ig_user_id),
        lambda: client.fetch_media(credentials),
    )

    posts = media.get("data") or []
    await store_instagram_sync(user_id, profile, posts)

    logger.info(
        "Instagram sync stored",
        extra={"job_id": str(ctx.job_id), "user_id": user_id, "posts": len(posts)},
    )
    return {"profile_updated": True, "posts_synced": len(posts)}


@_default_registry.register(JobType.BRAND_DISCOVERY)
async def process_brand_discovery(ctx: JobContext) -> dict[str, Any]:
    user_id = _require_user(ctx, "brand discovery")
    discover_brands = ctx.collaborators.require("discover_brands")

    return await ctx.cache.get_or_compute(
        CacheNamespace.BRAND_MATCHING,
        cache_key("brands", user_id, date_bucket(ctx.now)),
        lambda: discover_brands(user_id, ctx.payload),
        ttl=86400,
    )


def build_default_registry() -> ProcessorRegistry:
    """
    Registry with every built-in processor.

    Raises:
        RuntimeError: If a job type has no processor.
    """
    registry = _default_registry.copy()
    missing = registry.missing()
    if missing:
        raise RuntimeError(f"No processor registered for job types: {missing}")
    return registry
