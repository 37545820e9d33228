"""
Operator routes for the dead letter queue and the cache.

Every route requires a token with the admin role.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from taskqueue.api.auth import CurrentAdmin
from taskqueue.api.dependencies import Services
from taskqueue.constants import API_V1_PREFIX, DeadLetterStatus
from taskqueue.errors import InvalidStateError, NotFoundError, TaskQueueError
from taskqueue.types.api import (
    BulkRetryRequest,
    BulkRetryResponse,
    CacheCleanupResponse,
    DeadLetterListResponse,
    DeadLetterResponse,
    PurgeRequest,
    PurgeResponse,
    ResolveRequest,
    RetryResponse,
)
from taskqueue.types.job import CacheStats, DeadLetterStats

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/admin", tags=["Admin"])


def _to_http_error(error: TaskQueueError) -> HTTPException:
    """Map queue errors to HTTP status codes."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


@router.get(
    "/dead-letters",
    response_model=DeadLetterListResponse,
    summary="List dead letters",
)
async def list_dead_letters(
    admin: CurrentAdmin,
    services: Services,
    status_filter: DeadLetterStatus | None = Query(default=None, alias="status"),
    job_type: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    include_stats: bool = Query(default=False),
) -> DeadLetterListResponse:
    dlq = services.dead_letter_queue
    entries = await dlq.list_entries(
        status=status_filter,
        job_type=job_type,
        user_id=user_id,
        limit=limit,
        offset=offset,
    )

    return DeadLetterListResponse(
        entries=[DeadLetterResponse.model_validate(entry) for entry in entries],
        limit=limit,
        offset=offset,
        stats=await dlq.get_stats() if include_stats else None,
    )


@router.get(
    "/dead-letters/stats",
    response_model=DeadLetterStats,
    summary="Dead letter statistics",
)
async def dead_letter_stats(admin: CurrentAdmin, services: Services) -> DeadLetterStats:
    return await services.dead_letter_queue.get_stats()


@router.get(
    "/dead-letters/{dlq_id}",
    response_model=DeadLetterResponse,
    summary="Get a dead letter",
)
async def get_dead_letter(
    dlq_id: UUID,
    admin: CurrentAdmin,
    services: Services,
) -> DeadLetterResponse:
    entry = await services.dead_letter_queue.get(dlq_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Dead letter not found",
        )
    return DeadLetterResponse.model_validate(entry)


@router.post(
    "/dead-letters/bulk-retry",
    response_model=BulkRetryResponse,
    summary="Retry every dead letter of a job type",
)
async def bulk_retry_dead_letters(
    request: BulkRetryRequest,
    admin: CurrentAdmin,
    services: Services,
) -> BulkRetryResponse:
    retried = await services.dead_letter_queue.bulk_retry(job_type=request.job_type)
    logger.info(
        "Bulk retry requested",
        extra={"job_type": request.job_type, "retried": retried, "admin": admin.user_id},
    )
    return BulkRetryResponse(retried=retried)


@router.post(
    "/dead-letters/purge",
    response_model=PurgeResponse,
    summary="Delete old resolved dead letters",
)
async def purge_dead_letters(
    admin: CurrentAdmin,
    services: Services,
    request: PurgeRequest | None = None,
) -> PurgeResponse:
    older_than_days = request.older_than_days if request else 30
    deleted = await services.dead_letter_queue.purge_resolved(older_than_days)
    return PurgeResponse(deleted=deleted)


@router.post(
    "/dead-letters/{dlq_id}/retry",
    response_model=RetryResponse,
    summary="Re-enqueue a dead letter",
)
async def retry_dead_letter(
    dlq_id: UUID,
    admin: CurrentAdmin,
    services: Services,
) -> RetryResponse:
    """
    Re-enqueue a dead job as a new job.

    Raises:
        HTTPException: 404 if missing or resolved, 409 if already retried.
    """
    try:
        job_id = await services.dead_letter_queue.retry(dlq_id)
    except TaskQueueError as e:
        raise _to_http_error(e) from e

    return RetryResponse(dead_letter_id=dlq_id, job_id=job_id)


@router.post(
    "/dead-letters/{dlq_id}/resolve",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Resolve a dead letter without retrying",
)
async def resolve_dead_letter(
    dlq_id: UUID,
    request: ResolveRequest,
    admin: CurrentAdmin,
    services: Services,
) -> None:
    try:
        await services.dead_letter_queue.resolve(
            dlq_id,
            request.notes,
            resolved_by=admin.user_id,
        )
    except TaskQueueError as e:
        raise _to_http_error(e) from e


@router.get(
    "/cache/stats",
    response_model=CacheStats,
    summary="Cache statistics",
)
async def cache_stats(admin: CurrentAdmin, services: Services) -> CacheStats:
    return await services.cache.get_stats()


@router.post(
    "/cache/cleanup",
    response_model=CacheCleanupResponse,
    summary="Delete expired cache entries",
)
async def cache_cleanup(admin: CurrentAdmin, services: Services) -> CacheCleanupResponse:
    return CacheCleanupResponse(deleted=await services.cache.cleanup_expired())
